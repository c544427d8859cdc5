"""
Region-rotation import (OSM -> facilities).

Prefect-free; the Prefect wrapper lives in flows/osm_import_flow.py.

State (import_status, id='osm'):
- current_region_index in [0, len(REGION_ORDER))
- phase: 1 = nodes only (cheap), 2 = nodes + ways + relations
- cycle_count: completed full passes over REGION_ORDER

One tick:
- process REGION_ORDER[current_region_index] with nodes_only = (phase == 1)
- index = (index + 1) % N; on wrap: cycle_count += 1, phase 1 -> 2
- at most max_creates new records; `more` is advisory, the pointer advances anyway

Design goals:
- Restart-safe: dedup makes re-processing a region idempotent.
- A fetch failure records last_error / last_error_at and does NOT advance.
- Overlapping timer fires are serialized by the `osm_import.main` lease.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .alerts import send_operator_alert
from .config import REGION_ORDER, RuntimeConfig, Settings, clamp_int, MAX_CREATES_CEILING
from .db import get_engine, get_session, utcnow
from .dedupe import import_candidates
from .leases import IMPORT_MAIN_LEASE, LeaseManager
from .models import FetchResult, ImportResult
from .providers.overpass import UnknownRegionError, region_iso
from .schema import ImportRun, ImportStatus

logger = logging.getLogger(__name__)

STATUS_ID = "osm"


class ImportFetchError(RuntimeError):
    """Every Overpass mirror failed for an import fetch."""


def region_order() -> List[str]:
    return list(REGION_ORDER)


def advance(index: int, phase: int, cycle_count: int, n: int) -> Tuple[int, int, int]:
    """Next (index, phase, cycle_count) after processing `index`."""
    nxt = (index + 1) % n
    if nxt == 0:
        cycle_count += 1
        if phase == 1:
            phase = 2
    return nxt, phase, cycle_count


def _load_status(s: Session) -> ImportStatus:
    st = s.get(ImportStatus, STATUS_ID)
    if st is None:
        st = ImportStatus(id=STATUS_ID, current_region_index=0, phase=1, cycle_count=0, total_created=0)
        s.add(st)
        s.flush()
    return st


def get_status(engine: Optional[Engine] = None) -> Dict[str, Any]:
    with get_session(engine or get_engine()) as s:
        st = _load_status(s)
        return {
            "current_region_index": st.current_region_index,
            "phase": st.phase,
            "cycle_count": st.cycle_count,
            "total_created": st.total_created,
            "last_region": st.last_region,
            "last_created": st.last_created,
            "last_error": st.last_error,
            "last_note": st.last_note,
        }


def _run_id(now: datetime, region: Optional[str]) -> str:
    # Suffix keeps two runs in the same microsecond (manual + tick) apart.
    return f"{now.strftime('%Y-%m-%dT%H:%M:%S.%fZ')}_{region or 'none'}_{uuid.uuid4().hex[:6]}"


def _log_run(s: Session, *, now: datetime, kind: str, region: Optional[str], **fields: Any) -> None:
    s.add(ImportRun(run_id=_run_id(now, region), kind=kind, region=region, ts=now, **fields))


def _fetch(client: Any, region: str, nodes_only: bool) -> FetchResult:
    res = client.fetch_candidates(region, nodes_only=nodes_only)
    if not res.ok:
        raise ImportFetchError(res.error or "All Overpass mirrors failed")
    return res


def run_region_import(
    engine: Optional[Engine],
    client: Any,
    *,
    region: str,
    max_creates: int = 2000,
    nodes_only: bool = False,
    owner_uid: Optional[str] = None,
    decimals: int = 5,
    now: Optional[datetime] = None,
) -> ImportResult:
    """
    Operator-triggered single-region import. Does not move the rotation pointer.

    Raises UnknownRegionError before anything is written; ImportFetchError
    after the failed run is logged.
    """
    eng = engine or get_engine()
    now = now or utcnow()
    region = (region or "").strip().upper()
    max_creates = clamp_int(max_creates, 1, MAX_CREATES_CEILING, 2000)
    region_iso(region)  # raises UnknownRegionError

    try:
        res = _fetch(client, region, nodes_only)
    except ImportFetchError as e:
        with get_session(eng) as s:
            _log_run(s, now=now, kind="manual", region=region, ok=False, nodes_only=nodes_only,
                     max_creates=max_creates, error=str(e))
        raise

    with get_session(eng) as s:
        result = import_candidates(
            s, res.candidates, region=region, owner_uid=owner_uid,
            max_creates=max_creates, decimals=decimals, now=now,
        )
        result.endpoint = res.endpoint
        st = _load_status(s)
        st.total_created = int(st.total_created or 0) + result.created
        _log_run(s, now=now, kind="manual", region=region, ok=True, created=result.created,
                 skipped_existing=result.skipped_existing, more=result.more, nodes_only=nodes_only,
                 max_creates=max_creates, endpoint=res.endpoint)

    logger.info(json.dumps({"event": "osm_region_import_done", "kind": "manual", **result.to_dict()}, sort_keys=True))
    return result


def run_import_tick(
    engine: Optional[Engine],
    client: Any,
    config: RuntimeConfig,
    settings: Settings,
    *,
    owner: Optional[str] = None,
    leases: Optional[LeaseManager] = None,
    alert: Callable[..., Any] = send_operator_alert,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    One rotation step. NEVER raises.

    Returns a summary dict; "skipped" carries the reason when nothing ran
    (disabled / lease_busy), "error" carries the failure text.
    """
    eng = engine or get_engine()
    now = now or utcnow()
    owner = owner or f"main:{uuid.uuid4().hex[:12]}"
    leases = leases or LeaseManager(eng)
    summary: Dict[str, Any] = {"ok": False, "region": None, "created": 0, "skipped_existing": 0, "more": False}

    if not config.auto_import_enabled():
        summary["skipped"] = "disabled"
        logger.info(json.dumps({"event": "osm_import_tick_skipped", "reason": "disabled"}, sort_keys=True))
        return summary

    with leases.held(IMPORT_MAIN_LEASE, owner, settings.import_lease_ttl_s, now=now) as lease:
        if not lease.acquired:
            summary["skipped"] = "lease_busy"
            summary["held_by"] = lease.held_by
            summary["held_until"] = lease.held_until.isoformat() if lease.held_until else None
            return summary
        summary.update(_tick_locked(eng, client, config, settings, alert=alert, now=now))

    logger.info(json.dumps({"event": "osm_import_tick_done", **summary}, sort_keys=True, default=str))
    return summary


def _tick_locked(
    eng: Engine,
    client: Any,
    config: RuntimeConfig,
    settings: Settings,
    *,
    alert: Callable[..., Any],
    now: datetime,
) -> Dict[str, Any]:
    order = REGION_ORDER
    n = len(order)
    max_creates = config.auto_import_max_creates()
    owner_uid = config.owner_uid()

    try:
        with get_session(eng) as s:
            st = _load_status(s)
            index = int(st.current_region_index or 0) % n
            phase = max(1, int(st.phase or 1))
            cycle_count = int(st.cycle_count or 0)
            st.last_run_at = now
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {str(e)[:500]}"}

    region = order[index]
    nodes_only = (phase <= 1) if config.auto_import_phased() else False
    out: Dict[str, Any] = {"region": region, "phase": phase, "cycle_count": cycle_count, "nodes_only": nodes_only}

    try:
        res = _fetch(client, region, nodes_only)
        with get_session(eng) as s:
            result = import_candidates(
                s, res.candidates, region=region, owner_uid=owner_uid,
                max_creates=max_creates, decimals=settings.import_cell_decimals, now=now,
            )
            nxt, next_phase, next_cycle = advance(index, phase, cycle_count, n)
            st = _load_status(s)
            st.current_region_index = nxt
            st.phase = next_phase
            st.cycle_count = next_cycle
            st.total_created = int(st.total_created or 0) + result.created
            st.last_region = region
            st.last_created = result.created
            st.last_skipped_existing = result.skipped_existing
            st.last_more = result.more
            st.last_nodes_only = nodes_only
            st.last_endpoint = res.endpoint
            st.last_success_at = now
            st.last_error = None
            st.last_note = f"{region}: created={result.created} skipped={result.skipped_existing} more={result.more}"
            _log_run(s, now=now, kind="tick", region=region, ok=True, created=result.created,
                     skipped_existing=result.skipped_existing, more=result.more, nodes_only=nodes_only,
                     max_creates=max_creates, phase=phase, cycle_count=cycle_count, endpoint=res.endpoint)
    except Exception as e:
        err = f"{type(e).__name__}: {str(e)[:500]}"
        logger.warning(json.dumps({"event": "osm_import_tick_failed", "region": region, "error": err}, sort_keys=True))
        try:
            with get_session(eng) as s:
                st = _load_status(s)
                st.last_error = err
                st.last_error_at = now
                st.last_note = f"{region}: failed"
                _log_run(s, now=now, kind="tick", region=region, ok=False, nodes_only=nodes_only,
                         max_creates=max_creates, phase=phase, cycle_count=cycle_count, error=err)
        except Exception:
            logger.exception("could not persist import failure for %s", region)
        alert(f"OSM import failed for {region}", err, webhook_url=settings.alerts_webhook_url or None)
        out.update({"ok": False, "error": err})
        return out

    if result.created == 0:
        alert(
            f"OSM import: 0 new courts for {region}",
            f"nodesOnly={nodes_only} skipped={result.skipped_existing}",
            webhook_url=settings.alerts_webhook_url or None,
        )

    out.update(
        {
            "ok": True,
            "created": result.created,
            "skipped_existing": result.skipped_existing,
            "merged": result.merged,
            "more": result.more,
            "endpoint": res.endpoint,
            "next_index": nxt,
            "next_phase": next_phase,
            "next_cycle_count": next_cycle,
        }
    )
    return out


__all__ = [
    "ImportFetchError",
    "UnknownRegionError",
    "advance",
    "get_status",
    "region_order",
    "run_import_tick",
    "run_region_import",
]
