"""
flows.coverage_flows: Prefect wrappers for courtatlas.coverage

- osm-coverage-audit (hourly): local vs Overpass counts, queue backfill tasks
- osm-backlog-batch (every 15 min): consume one backfill task
- region-stats-index (every 6 h): per-region totals / sports / top cities
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from prefect import flow, get_run_logger

from courtatlas.coverage import build_region_index, consume_backlog_task, run_coverage_audit
from courtatlas.services import build_services


@flow(name="osm-coverage-audit")
def coverage_audit_flow(regions: Optional[List[str]] = None) -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    counts = run_coverage_audit(svc.engine, svc.overpass, svc.settings, regions=regions)

    if counts.get("lagging_top"):
        logger.info(f"[COVERAGE] lagging: {', '.join(counts['lagging_top'])}")
    logger.info(json.dumps({"event": "coverage_audit", **counts}, sort_keys=True))
    return counts


@flow(name="osm-backlog-batch")
def backlog_batch_flow() -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    summary = consume_backlog_task(svc.engine, svc.overpass, svc.config, svc.settings, leases=svc.leases)

    if summary.get("error"):
        logger.warning(f"[BACKLOG] task {summary.get('task_id')} failed: {summary['error']}")
    logger.info(json.dumps({"event": "backlog_batch", **summary}, sort_keys=True))
    return summary


@flow(name="region-stats-index")
def region_stats_index_flow(top_cities: int = 25) -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    counts = build_region_index(svc.engine, top_cities=top_cities)
    logger.info(json.dumps({"event": "region_stats_index", **counts}, sort_keys=True))
    return counts


if __name__ == "__main__":
    coverage_audit_flow()
