"""
flows.repair_flow: Prefect wrapper for courtatlas.repair

Runs every 10 minutes but does nothing unless app_config 'repair.enabled' is
true. Mode / caps come from app_config 'repair.settings'; the cursor persists
between runs so a full pass spans many invocations.
"""

from __future__ import annotations

import json
from typing import Any, Dict

from prefect import flow, get_run_logger

from courtatlas.repair import run_scheduled_repair
from courtatlas.services import build_services


@flow(name="facility-repair-batch")
def repair_batch_flow() -> Dict[str, Any]:
    logger = get_run_logger()
    svc = build_services()

    res = run_scheduled_repair(
        svc.engine, svc.repair_geocoder(), svc.config, time_budget_s=svc.settings.repair_time_budget_s,
    )

    if res.get("skipped"):
        logger.info(f"[REPAIR] skipped: {res['skipped']}")
    logger.info(json.dumps({"event": "repair_batch", **res}, sort_keys=True, default=str))
    return res


if __name__ == "__main__":
    repair_batch_flow()
