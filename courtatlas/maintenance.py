"""
Facility housekeeping that is not import or repair:

- stale "got next" queue entries on courts (players who walked away)

NOTE:
- courts is a JSON list; each court may carry gotNextQueue = [{..., lastActivity}]
- lastActivity is an ISO-8601 string or epoch seconds/millis; unparseable
  entries are kept
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.engine import Engine

from .db import as_utc, get_engine, get_session, utcnow
from .schema import Facility

logger = logging.getLogger(__name__)


def parse_activity(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts > 1e11:  # millis
            ts = ts / 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(raw))
        except ValueError:
            return None
    return None


def prune_courts(courts: Any, cutoff: datetime) -> Tuple[Any, int]:
    """Returns (courts, removed). Input is not mutated."""
    if not isinstance(courts, list):
        return courts, 0
    removed = 0
    out: List[Any] = []
    for court in courts:
        queue = court.get("gotNextQueue") if isinstance(court, dict) else None
        if not isinstance(queue, list) or not queue:
            out.append(court)
            continue
        kept = []
        for entry in queue:
            ts = parse_activity(entry.get("lastActivity")) if isinstance(entry, dict) else None
            if ts is not None and ts < cutoff:
                removed += 1
                continue
            kept.append(entry)
        out.append({**court, "gotNextQueue": kept})
    return out, removed


def prune_stale_queue_entries(
    engine: Optional[Engine] = None,
    *,
    stale_minutes: int = 60,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Drop queue entries idle longer than stale_minutes. NEVER raises."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=stale_minutes)
    counts: Dict[str, Any] = {"scanned": 0, "facilities_updated": 0, "entries_removed": 0}
    try:
        with get_session(engine or get_engine()) as s:
            rows = s.execute(select(Facility).where(Facility.courts.is_not(None))).scalars().all()
            for f in rows:
                counts["scanned"] += 1
                courts, removed = prune_courts(f.courts, cutoff)
                if not removed:
                    continue
                f.courts = courts
                f.updated_at = now
                counts["facilities_updated"] += 1
                counts["entries_removed"] += removed
    except Exception as e:
        counts["error"] = f"{type(e).__name__}: {str(e)[:500]}"

    logger.info(json.dumps({"event": "queue_prune_done", **counts}, sort_keys=True))
    return counts
