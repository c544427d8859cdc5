"""
Location index + dedup for facility records.

Cell key:
- "lat,lon" rounded to N decimals (5 by default, ~1.1 m). This is a coarse
  tolerance for near-identical provider re-submissions, not spatial clustering.

Ingest rules (per candidate, in order):
1) a record with the same derived id exists  -> skip (idempotent re-import)
2) the cell already has a primary           -> add provenance to the primary, skip
3) otherwise                                 -> create record, register as primary

Sweep rules (periodic, bounded window of most recent records):
- group by cell key; primary = user-submitted before imported, then oldest
- non-primaries: dup_of=primary, approved=False, review_status='duplicate'
- provenance of each duplicate merges into the primary's alt_sources
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .config import OSM_ATTRIBUTION, OSM_LICENSE
from .db import as_utc, get_engine, get_session, utcnow
from .models import AltSource, CandidateFacility, ImportResult, Provenance
from .providers.overpass import infer_sport_type
from .schema import Facility, LocationIndexEntry

logger = logging.getLogger(__name__)

IMPORTED_SOURCES = frozenset({"osm"})
DUPLICATE_STATUS = "duplicate"


def cell_key(lat: float, lon: float, decimals: int = 5) -> str:
    return f"{float(lat):.{decimals}f},{float(lon):.{decimals}f}"


class LocationIndex:
    """Cell key -> primary record id. Works inside the caller's session/transaction."""

    def __init__(self, session: Session):
        self.session = session

    def find_primary(self, key: str) -> Optional[str]:
        row = self.session.get(LocationIndexEntry, key)
        return row.primary_id if row is not None else None

    def register_primary(
        self,
        key: str,
        record_id: str,
        *,
        lat: float,
        lon: float,
        region: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Create or repoint the entry. One entry per cell, ever."""
        row = self.session.get(LocationIndexEntry, key)
        if row is None:
            row = LocationIndexEntry(cell_key=key, primary_id=record_id, lat=lat, lon=lon)
            self.session.add(row)
        row.primary_id = record_id
        if region:
            row.region = region
        row.updated_at = now or utcnow()

    def merge_duplicate(self, primary_id: str, sources: Iterable[AltSource], *, now: Optional[datetime] = None) -> int:
        """Union provenance into the primary's alt_sources. Returns entries added."""
        primary = self.session.get(Facility, primary_id)
        if primary is None:
            return 0
        prov = Provenance.from_list(primary.alt_sources)
        added = prov.merge(sources)
        if added:
            primary.alt_sources = prov.to_list()
            primary.updated_at = now or utcnow()
        return added


# -----------------------------
# Record construction
# -----------------------------
def build_facility(candidate: CandidateFacility, *, region: str, owner_uid: Optional[str], now: datetime) -> Facility:
    tags = candidate.tags or {}
    sport = infer_sport_type(tags)
    name = str(tags.get("name") or "").strip() or f"{tags.get('sport') or 'court'} court"
    housenumber = str(tags.get("addr:housenumber") or "").strip()
    street = str(tags.get("addr:street") or "").strip()
    address = " ".join(x for x in (housenumber, street) if x)
    surface = str(tags.get("surface") or "").strip()
    lit = str(tags.get("lit") or "").strip().lower() == "yes"
    return Facility(
        id=candidate.record_id,
        name=name,
        address=address,
        city=str(tags.get("addr:city") or "").strip(),
        state=region,
        lat=candidate.lat,
        lon=candidate.lon,
        courts=[
            {
                "id": f"{candidate.record_id}:c1",
                "sportType": sport,
                "surface": surface or None,
                "lighted": lit,
                "gotNextQueue": [],
            }
        ],
        source=candidate.provider,
        source_id=candidate.source_ref,
        source_attribution=OSM_ATTRIBUTION,
        license=OSM_LICENSE,
        alt_sources=[],
        approved=True,
        review_status="approved",
        created_by=owner_uid,
        created_at=now,
        updated_at=now,
    )


def import_candidates(
    session: Session,
    candidates: List[CandidateFacility],
    *,
    region: str,
    owner_uid: Optional[str],
    max_creates: int,
    decimals: int = 5,
    now: Optional[datetime] = None,
) -> ImportResult:
    """
    Apply the ingest rules to a candidate list inside the caller's session.

    NOTE:
    `more` is just "we hit max_creates". It says nothing about what is left in
    the region; the rotation advances regardless.
    """
    now = now or utcnow()
    index = LocationIndex(session)
    result = ImportResult(region=region)
    # Cells claimed earlier in this same batch (not flushed yet).
    seen_cells: Dict[str, str] = {}

    for cand in candidates:
        if result.created >= max_creates:
            break
        try:
            if session.get(Facility, cand.record_id) is not None:
                result.skipped_existing += 1
                continue
            key = cell_key(cand.lat, cand.lon, decimals)
            primary_id = seen_cells.get(key) or index.find_primary(key)
            if primary_id:
                result.skipped_existing += 1
                if index.merge_duplicate(primary_id, [AltSource(cand.provider, cand.source_ref)], now=now):
                    result.merged += 1
                continue
            session.add(build_facility(cand, region=region, owner_uid=owner_uid, now=now))
            index.register_primary(key, cand.record_id, lat=cand.lat, lon=cand.lon, region=region, now=now)
            seen_cells[key] = cand.record_id
            session.flush()
            result.created += 1
        except (TypeError, ValueError) as e:
            # One bad candidate never sinks the batch.
            logger.warning("skipping candidate %s: %s", cand.record_id, e)
            continue

    result.more = result.created >= max_creates
    return result


# -----------------------------
# Periodic re-dedup sweep
# -----------------------------
def _primary_sort_key(f: Facility):
    imported = 1 if (f.source or "") in IMPORTED_SOURCES else 0
    created = as_utc(f.created_at) or utcnow()
    return (imported, created, f.id)


def _own_provenance(f: Facility) -> List[AltSource]:
    out: List[AltSource] = []
    if f.source_id:
        out.append(AltSource(f.source or "unknown", f.source_id))
    else:
        # user submissions carry no external id; the record id is the reference
        out.append(AltSource(f.source or "unknown", f.id))
    out.extend(Provenance.from_list(f.alt_sources))
    return out


def dedupe_sweep(
    engine: Optional[Engine] = None,
    *,
    window: int = 1500,
    max_fixes: int = 100,
    decimals: int = 5,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Re-dedup the most recent `window` records. NEVER raises.
    """
    now = now or utcnow()
    counts: Dict[str, Any] = {"scanned": 0, "groups": 0, "fixed": 0}
    try:
        with get_session(engine or get_engine()) as s:
            rows = s.execute(
                select(Facility)
                .where(Facility.lat.is_not(None), Facility.lon.is_not(None))
                .order_by(Facility.created_at.desc())
                .limit(window)
            ).scalars().all()
            counts["scanned"] = len(rows)

            groups: Dict[str, List[Facility]] = defaultdict(list)
            for f in rows:
                groups[cell_key(f.lat, f.lon, decimals)].append(f)

            index = LocationIndex(s)
            for key, members in groups.items():
                if counts["fixed"] >= max_fixes:
                    break
                if len(members) < 2:
                    continue
                members.sort(key=_primary_sort_key)
                primary = members[0]
                if primary.dup_of:
                    continue
                counts["groups"] += 1
                for dup in members[1:]:
                    if counts["fixed"] >= max_fixes:
                        break
                    if dup.dup_of == primary.id:
                        continue
                    dup.dup_of = primary.id
                    dup.approved = False
                    dup.review_status = DUPLICATE_STATUS
                    dup.updated_at = now
                    index.merge_duplicate(primary.id, _own_provenance(dup), now=now)
                    counts["fixed"] += 1
                index.register_primary(key, primary.id, lat=primary.lat, lon=primary.lon, region=primary.state or None, now=now)
    except Exception as e:
        counts["error"] = f"{type(e).__name__}: {str(e)[:500]}"

    logger.info(json.dumps({"event": "dedupe_sweep_done", **counts}, sort_keys=True))
    return counts


def listed(stmt):
    """Restrict a Facility select to records shown in default listings (non-duplicates)."""
    return stmt.where(Facility.dup_of.is_(None))
