"""
Deploy every courtatlas flow to the managed work pool with its schedule.

Usage:
    PYTHONPATH=. python deploy_schedules.py            # all
    PYTHONPATH=. python deploy_schedules.py queue-prune
"""

import sys
from datetime import timedelta

from prefect.client.schemas.schedules import CronSchedule, IntervalSchedule

from flows.bootstrap_db import bootstrap_db
from flows.coverage_flows import backlog_batch_flow, coverage_audit_flow, region_stats_index_flow
from flows.maintenance_flows import dedupe_sweep_flow, geo_cache_prune_flow, queue_prune_flow
from flows.osm_import_flow import osm_import_tick_flow
from flows.repair_flow import repair_batch_flow

WORK_POOL = "courtatlas-managed"

# (deployment name, flow, schedule or None for manual-only, tags, description)
DEPLOYMENTS = [
    ("osm-import-tick", osm_import_tick_flow, IntervalSchedule(interval=timedelta(minutes=7)),
     ["import", "osm"], "Region-rotation import: one region per tick, lease-guarded."),
    ("osm-coverage-audit", coverage_audit_flow, CronSchedule(cron="5 * * * *", timezone="UTC"),
     ["coverage", "osm"], "Hourly local vs Overpass coverage audit; queues backfill tasks."),
    ("osm-backlog-batch", backlog_batch_flow, CronSchedule(cron="*/15 * * * *", timezone="UTC"),
     ["coverage", "osm"], "Consume one population-center backfill task."),
    ("region-stats-index", region_stats_index_flow, CronSchedule(cron="20 */6 * * *", timezone="UTC"),
     ["stats"], "Per-region totals, sport split and busiest cities."),
    ("geo-cache-prune", geo_cache_prune_flow, CronSchedule(cron="30 4 * * *", timezone="UTC"),
     ["maintenance", "geo"], "Delete expired geo cache rows."),
    ("facility-dedupe-sweep", dedupe_sweep_flow, CronSchedule(cron="40 */12 * * *", timezone="UTC"),
     ["maintenance", "dedupe"], "Re-dedup the most recent facilities at the cell key."),
    ("queue-prune", queue_prune_flow, CronSchedule(cron="*/15 * * * *", timezone="UTC"),
     ["maintenance"], "Drop stale gotNextQueue entries."),
    ("facility-repair-batch", repair_batch_flow, CronSchedule(cron="*/10 * * * *", timezone="UTC"),
     ["repair"], "Name / address repair; no-op unless repair.enabled."),
    ("bootstrap-db", bootstrap_db, None,
     ["ops"], "Create tables (idempotent). Manual only."),
]


def deploy(only=None) -> None:
    for name, fl, schedule, tags, description in DEPLOYMENTS:
        if only and name not in only:
            continue
        kwargs = {}
        if schedule is not None:
            kwargs["schedule"] = schedule
        fl.deploy(
            name=name,
            work_pool_name=WORK_POOL,
            tags=["courtatlas", *tags],
            description=description,
            # Required by Prefect 3 deploy() to avoid the remote storage check;
            # the process worker runs from the checked-out repo.
            image=f"courtatlas/{name}:placeholder",
            **kwargs,
        )
        print(f"deployed {name}")


if __name__ == "__main__":
    deploy(set(sys.argv[1:]) or None)
