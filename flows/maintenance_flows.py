"""
flows.maintenance_flows: housekeeping jobs

- geo-cache-prune (daily): delete expired geo cache rows
- facility-dedupe-sweep (every 12 h): re-dedup recent records at the cell key
- queue-prune (every 15 min): drop stale gotNextQueue entries
"""

from __future__ import annotations

import json
from typing import Any, Dict

from prefect import flow, get_run_logger

from courtatlas.dedupe import dedupe_sweep
from courtatlas.maintenance import prune_stale_queue_entries
from courtatlas.services import build_services


@flow(name="geo-cache-prune")
def geo_cache_prune_flow(batch_size: int = 500) -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    deleted = svc.cache.prune_expired(batch_size=batch_size)
    logger.info(json.dumps({"event": "geo_cache_prune", "deleted": deleted}, sort_keys=True))
    return {"deleted": deleted}


@flow(name="facility-dedupe-sweep")
def dedupe_sweep_flow() -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()
    st = svc.settings

    counts = dedupe_sweep(
        svc.engine, window=st.dedupe_window, max_fixes=st.dedupe_max_fixes, decimals=st.import_cell_decimals,
    )
    logger.info(json.dumps({"event": "dedupe_sweep", **counts}, sort_keys=True))
    return counts


@flow(name="queue-prune")
def queue_prune_flow() -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    counts = prune_stale_queue_entries(svc.engine, stale_minutes=svc.settings.queue_stale_minutes)
    logger.info(json.dumps({"event": "queue_prune", **counts}, sort_keys=True))
    return counts


if __name__ == "__main__":
    geo_cache_prune_flow()
