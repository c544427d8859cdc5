"""
flows.osm_import_flow: Prefect wrapper for courtatlas.importer

One rotation step per run (every 7 minutes). Overlapping runs are harmless:
the second one sees the `osm_import.main` lease and skips.

Intended usage:
  - Ad-hoc:  python -m flows.osm_import_flow
  - Prefect deployment: deploy_schedules.py
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from prefect import flow, get_run_logger

from courtatlas.importer import run_import_tick, run_region_import
from courtatlas.services import build_services


@flow(name="osm-import-tick")
def osm_import_tick_flow() -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    summary = run_import_tick(svc.engine, svc.overpass, svc.config, svc.settings, leases=svc.leases)

    if summary.get("skipped"):
        logger.info(f"[OSM] tick skipped: {summary['skipped']}")
    logger.info(json.dumps({"event": "osm_import_tick", **summary}, sort_keys=True, default=str))
    return summary


@flow(name="osm-import-region")
def osm_import_region_flow(region: str, max_creates: Optional[int] = None, nodes_only: bool = False) -> Dict[str, Any]:
    """Manual single-region import; raises on unknown region or total fetch failure."""
    logger = get_run_logger()
    svc = build_services()

    result = run_region_import(
        svc.engine,
        svc.overpass,
        region=region,
        max_creates=max_creates or svc.settings.manual_max_creates,
        nodes_only=nodes_only,
        owner_uid=svc.config.owner_uid(),
        decimals=svc.settings.import_cell_decimals,
    )
    logger.info(json.dumps({"event": "osm_import_region", **result.to_dict()}, sort_keys=True))
    return result.to_dict()


if __name__ == "__main__":
    osm_import_tick_flow()
