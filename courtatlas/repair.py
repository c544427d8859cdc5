"""
Record repair batch: fill missing / generic names and missing address, city, state.

Modes (cheapest first):
- conservative: no external calls. City/state parsed from the address string,
  fallback name from street / city + sport label.
- balanced: conservative + one reverse geocode per cluster cell (cluster_decimals),
  capped at cap_per_run calls, plus a per-cell "last known good name" reuse.
- full: reverse geocode every record that needs repair (still capped).

Shared post-processing:
- state canonicalized to a two-letter code
- a field is written only if its value changed; title-casing is applied only
  to changed values, so deliberate original casing survives

Resumable: cursor = last processed id (ordered by id), persisted in app_config.
Time-boxed: stops after time_budget_s and leaves the cursor where it stopped.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.engine import Engine

from .addresses import (
    canon_state,
    cluster_key,
    fallback_name,
    is_missing_address,
    is_missing_or_generic_name,
    parse_city_state,
    sport_family,
    title_case,
)
from .config import REPAIR_CURSOR_K, REPAIR_SETTINGS_K, RuntimeConfig, clamp_int
from .coverage import get_diagnostic
from .db import get_engine, get_session, utcnow
from .dedupe import listed
from .models import ReverseResult
from .schema import Diagnostic, Facility

logger = logging.getLogger(__name__)

STATUS_KEY = "repair.status"
WRITE_BATCH = 400

_MODE_ALIASES = {
    "conservative": "conservative",
    "ultraconservative": "conservative",
    "ultra_conservative": "conservative",
    "balanced": "balanced",
    "full": "full",
}


def _flag(data: Mapping[str, Any], *keys: str, default: bool) -> bool:
    for k in keys:
        if k in data and data[k] is not None:
            v = data[k]
            return v if isinstance(v, bool) else str(v).strip().lower() in ("1", "true", "yes", "y", "on")
    return default


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if data.get(k) is not None:
            return data[k]
    return None


@dataclass
class RepairSettings:
    mode: str = "balanced"
    cap_per_run: int = 50000
    cluster_decimals: int = 3
    parse_address_only: bool = True
    refine_names_cap: int = 0
    page_size: int = 600

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "RepairSettings":
        """Accepts snake_case or camelCase keys; out-of-range values are clamped."""
        data = data or {}
        mode = _MODE_ALIASES.get(str(_pick(data, "mode") or "balanced").strip().lower(), "balanced")
        return cls(
            mode=mode,
            cap_per_run=clamp_int(_pick(data, "cap_per_run", "capPerRun") or 50000, 0, 10_000_000, 50000),
            cluster_decimals=clamp_int(_pick(data, "cluster_decimals", "clusterDecimals") or 3, 2, 5, 3),
            parse_address_only=_flag(data, "parse_address_only", "parseAddressOnly", "parseCityStateNoApi", default=True),
            refine_names_cap=clamp_int(_pick(data, "refine_names_cap", "refineNamesCap") or 0, 0, 10_000_000, 0),
            page_size=clamp_int(_pick(data, "page_size", "pageSize") or 600, 200, 900, 600),
        )


@dataclass
class _Counters:
    scanned: int = 0
    updated: int = 0
    no_coords: int = 0
    api_misses: int = 0
    rg_calls: int = 0
    clusters_touched: int = 0
    pages: int = 0


class _BatchState:
    """Per-run memo: cell -> reverse result, cell|sport -> good name."""

    def __init__(self) -> None:
        self.cell_addr: Dict[str, Tuple[str, str, str]] = {}
        self.cell_name: Dict[str, str] = {}
        self.geocoded: Set[str] = set()
        self.refine_used = 0


def _reverse(geocoder: Any, lat: float, lon: float) -> Optional[ReverseResult]:
    try:
        return geocoder.reverse_geocode(lat, lon)
    except Exception as e:
        logger.warning("repair reverse geocode failed at %s,%s: %s", lat, lon, e)
        return None


def _repair_one(
    f: Facility,
    settings: RepairSettings,
    geocoder: Any,
    state: _BatchState,
    c: _Counters,
) -> Optional[Dict[str, str]]:
    """Return the changed fields for one record, or None to leave it alone."""
    name = (f.name or "").strip()
    address = (f.address or "").strip()
    city = (f.city or "").strip()
    st = (f.state or "").strip()
    courts = f.courts if isinstance(f.courts, list) else []
    sport = str((courts[0] or {}).get("sportType") or "basketball") if courts and isinstance(courts[0], dict) else "basketball"

    missing_name = is_missing_or_generic_name(name)
    missing_addr = is_missing_address(address) or not city or not st
    if not missing_name and not missing_addr:
        return None
    lat, lon = f.lat, f.lon
    if lat is None or lon is None or lat == 0 or lon == 0:
        c.no_coords += 1
        return None

    new_name, new_addr, new_city, new_state = name, address, city, st
    key = cluster_key(lat, lon, settings.cluster_decimals)

    def _apply(got: Tuple[str, str, str]) -> None:
        nonlocal new_addr, new_city, new_state
        if not missing_addr:
            return
        if not new_addr or is_missing_address(new_addr):
            new_addr = got[0] or new_addr
        new_city = new_city or got[1]
        new_state = new_state or got[2]

    if settings.mode == "balanced":
        known = state.cell_addr.get(key)
        if missing_addr and known:
            _apply(known)
        name_key = f"{key}|{sport_family(sport)}"
        if missing_name and name_key in state.cell_name:
            new_name = state.cell_name[name_key]
        needs_lookup = not new_addr or is_missing_address(new_addr) or not new_city or not new_state
        if needs_lookup and key not in state.geocoded and c.rg_calls < settings.cap_per_run:
            rg = _reverse(geocoder, lat, lon)
            if rg is not None:
                c.rg_calls += 1
                c.clusters_touched += 1
                state.geocoded.add(key)
                got = (rg.address.strip(), rg.city.strip(), canon_state(rg.state))
                if any(got):
                    state.cell_addr[key] = got
                _apply(got)
            else:
                c.api_misses += 1
        if not is_missing_address(address) and city and st:
            state.cell_addr[key] = (address, city, canon_state(st))
        if not missing_name:
            state.cell_name[name_key] = name
        if missing_name and new_name == name:
            new_name = fallback_name(address=new_addr, city=new_city, sport=sport)
    elif settings.mode == "full":
        if c.rg_calls >= settings.cap_per_run:
            return None
        rg = _reverse(geocoder, lat, lon)
        if rg is None:
            c.api_misses += 1
            return None
        c.rg_calls += 1
        _apply((rg.address.strip(), rg.city.strip(), canon_state(rg.state)))
        if missing_name:
            new_name = fallback_name(address=new_addr, city=new_city, sport=sport)
    else:
        if settings.parse_address_only and (not new_city or not new_state) and new_addr:
            p_city, p_state = parse_city_state(new_addr)
            new_city = new_city or p_city
            new_state = new_state or p_state
        if missing_name:
            new_name = fallback_name(address=new_addr, city=new_city, sport=sport)

    if settings.parse_address_only and (not new_city or not new_state) and new_addr.strip():
        p_city, p_state = parse_city_state(new_addr)
        new_city = new_city or p_city
        new_state = new_state or p_state

    if settings.refine_names_cap > 0 and state.refine_used < settings.refine_names_cap and is_missing_or_generic_name(new_name):
        new_name = fallback_name(address=new_addr, city=new_city, sport=sport)
        state.refine_used += 1

    # compare against the stripped originals; surrounding whitespace alone is not an edit
    orig_name, orig_addr, orig_city, orig_state = name, address, city, st

    def _maybe_title(orig: str, val: str) -> str:
        return val if val == orig else title_case(val)

    new_name = _maybe_title(orig_name, new_name)
    new_addr = _maybe_title(orig_addr, new_addr)
    new_city = _maybe_title(orig_city, new_city)

    changed = (
        new_name != orig_name
        or new_addr != orig_addr
        or new_city != orig_city
        or canon_state(new_state) != canon_state(orig_state)
    )
    if not changed:
        return None
    return {"name": new_name, "address": new_addr, "city": new_city, "state": canon_state(new_state)}


def run_repair_batch(
    engine: Optional[Engine],
    geocoder: Any,
    settings: RepairSettings,
    *,
    start_after: Optional[str] = None,
    time_budget_s: float = 480.0,
    clock: Callable[[], float] = time.monotonic,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Process one page of facilities ordered by id, after `start_after`.

    Returns counters + {"cursor", "done", "timed_out"}. Store errors propagate;
    run_repair_once is the non-raising wrapper.
    """
    eng = engine or get_engine()
    now = now or utcnow()
    t0 = clock()
    c = _Counters()
    state = _BatchState()
    cursor = start_after
    timed_out = False

    with get_session(eng) as s:
        stmt = listed(select(Facility)).order_by(Facility.id.asc()).limit(settings.page_size)
        if start_after:
            stmt = stmt.where(Facility.id > start_after)
        rows = s.execute(stmt).scalars().all()
        pending_writes = 0

        for f in rows:
            if clock() - t0 > time_budget_s:
                timed_out = True
                break
            c.scanned += 1
            cursor = f.id
            update = _repair_one(f, settings, geocoder, state, c)
            if update is None:
                continue
            f.name = update["name"]
            f.address = update["address"]
            f.city = update["city"]
            f.state = update["state"]
            f.updated_at = now
            c.updated += 1
            pending_writes += 1
            if pending_writes >= WRITE_BATCH:
                s.commit()
                pending_writes = 0
        c.pages += 1

    out: Dict[str, Any] = asdict(c)
    out["cursor"] = cursor
    out["timed_out"] = timed_out
    out["done"] = (not timed_out) and len(rows) < settings.page_size
    return out


def run_repair_once(
    engine: Optional[Engine],
    geocoder: Any,
    config: RuntimeConfig,
    settings: RepairSettings,
    *,
    time_budget_s: float = 480.0,
    clock: Callable[[], float] = time.monotonic,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Resume from the persisted cursor, run one batch, persist cursor + status.

    NEVER raises. A finished pass (done=True) resets the cursor so the next
    run starts over from the first id.
    """
    eng = engine or get_engine()
    now = now or utcnow()
    status: Dict[str, Any] = dict(get_diagnostic(eng, STATUS_KEY) or {})
    status["last_run_at"] = now.isoformat()
    status["mode"] = settings.mode

    try:
        config.invalidate()
        cursor = config.get(REPAIR_CURSOR_K) or None
        res = run_repair_batch(
            eng, geocoder, settings, start_after=cursor,
            time_budget_s=time_budget_s, clock=clock, now=now,
        )
        config.set(REPAIR_CURSOR_K, None if res["done"] else res["cursor"])
        status.update(res)
        status["last_success_at"] = now.isoformat()
        status["last_error"] = None
    except Exception as e:
        res = {"error": f"{type(e).__name__}: {str(e)[:500]}"}
        status["last_error"] = res["error"]

    try:
        with get_session(eng) as s:
            row = s.get(Diagnostic, STATUS_KEY) or Diagnostic(key=STATUS_KEY)
            row.payload = status
            row.updated_at = now
            s.add(row)
    except Exception:
        logger.exception("could not persist repair status")

    logger.info(json.dumps({"event": "repair_batch_done", "mode": settings.mode, **res}, sort_keys=True, default=str))
    return res


def run_scheduled_repair(
    engine: Optional[Engine],
    geocoder: Any,
    config: RuntimeConfig,
    *,
    time_budget_s: float = 480.0,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Scheduled entry point: off unless repair.enabled is set."""
    if not config.repair_enabled():
        return {"skipped": "disabled"}
    settings = RepairSettings.from_mapping(config.get(REPAIR_SETTINGS_K) or {})
    return run_repair_once(engine, geocoder, config, settings, time_budget_s=time_budget_s, now=now)
