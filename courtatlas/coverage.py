"""
Coverage audit + targeted backfill.

Audit (per region):
- local count (non-duplicate facilities) vs Overpass ids-only count
- coverage = min(1, local/provider) if provider > 0, else 1 if local > 0 else 0
- provider > 0 and coverage < threshold -> discover top population centers
  and queue one radius-bounded BacklogTask per center not already queued
- backfill_queue is reconciled to the regions under threshold in this pass;
  pending tasks of regions now at/above threshold are dropped
- the worst N regions are published to diagnostics['coverage.lagging']

Backlog batch:
- one task per invocation, oldest pending first, claimed with a guarded
  pending->running update (attempts += 1)
- success -> done (+created/skipped); failure -> back to pending with last_error

Prefect-free; flows/coverage_flows.py schedules these.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .config import REGION_ORDER, RuntimeConfig, Settings
from .db import get_engine, get_session, utcnow
from .dedupe import import_candidates, listed
from .leases import IMPORT_CITY_LEASE, LeaseManager
from .models import PopulationCenter
from .schema import BackfillQueueEntry, BacklogTask, CoverageStat, Diagnostic, Facility, RegionStats

logger = logging.getLogger(__name__)

LAGGING_KEY = "coverage.lagging"


def coverage_ratio(local: int, provider: int) -> float:
    if provider > 0:
        return min(1.0, local / provider)
    return 1.0 if local > 0 else 0.0


def radius_km_for_population(population: int) -> int:
    if population >= 100_000:
        return 25
    if population >= 20_000:
        return 12
    return 8


def backlog_task_id(region: str, center: PopulationCenter) -> str:
    safe = re.sub(r"[^A-Za-z0-9]+", "_", center.name).strip("_")[:40]
    return f"{region}_{safe}_{round(center.lat * 1000)}_{round(center.lon * 1000)}"


def _set_diagnostic(s: Session, key: str, payload: Dict[str, Any], now: datetime) -> None:
    row = s.get(Diagnostic, key)
    if row is None:
        row = Diagnostic(key=key)
        s.add(row)
    row.payload = payload
    row.updated_at = now


def get_diagnostic(engine: Optional[Engine], key: str) -> Optional[Dict[str, Any]]:
    with get_session(engine or get_engine()) as s:
        row = s.get(Diagnostic, key)
        return dict(row.payload) if row is not None else None


def local_count(s: Session, region: str) -> int:
    stmt = listed(select(func.count()).select_from(Facility).where(Facility.state == region))
    return int(s.execute(stmt).scalar() or 0)


# -----------------------------
# Audit
# -----------------------------
def _enqueue_centers(s: Session, region: str, centers: List[PopulationCenter], top_k: int, now: datetime) -> int:
    queued = 0
    seen = set()
    for c in sorted(centers, key=lambda c: c.population, reverse=True)[:top_k]:
        task_id = backlog_task_id(region, c)
        if task_id in seen or s.get(BacklogTask, task_id) is not None:
            continue
        seen.add(task_id)
        s.add(
            BacklogTask(
                id=task_id,
                region=region,
                center_name=c.name,
                population=c.population,
                lat=c.lat,
                lon=c.lon,
                radius_km=radius_km_for_population(c.population),
                status="pending",
                attempts=0,
                created_at=now,
            )
        )
        queued += 1
    return queued


def _audit_region(s: Session, client: Any, region: str, settings: Settings, now: datetime) -> Dict[str, Any]:
    ours = local_count(s, region)
    provider = client.fetch_count(region)
    if provider is None:
        raise RuntimeError("All Overpass mirrors failed (count)")
    cov = coverage_ratio(ours, provider)
    lagging = provider > 0 and cov < settings.coverage_threshold

    queued = 0
    if lagging:
        centers = client.fetch_population_centers(region) or []
        queued = _enqueue_centers(s, region, centers, settings.audit_top_cities, now)

    stat = s.get(CoverageStat, region) or CoverageStat(region=region)
    stat.our_count = ours
    stat.provider_count = provider
    stat.coverage = cov
    stat.queued_tasks = queued
    stat.error = None
    stat.updated_at = now
    s.add(stat)
    return {"region": region, "our_count": ours, "provider_count": provider, "coverage": cov, "lagging": lagging, "queued": queued}


def run_coverage_audit(
    engine: Optional[Engine],
    client: Any,
    settings: Settings,
    *,
    regions: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Audit every region (or the given subset). NEVER raises; per-region errors are recorded."""
    eng = engine or get_engine()
    now = now or utcnow()
    counts: Dict[str, Any] = {"audited": 0, "failed": 0, "lagging": 0, "tasks_queued": 0}
    results: List[Dict[str, Any]] = []

    for region in list(regions or REGION_ORDER):
        try:
            with get_session(eng) as s:
                r = _audit_region(s, client, region, settings, now)
            results.append(r)
            counts["audited"] += 1
            counts["lagging"] += int(r["lagging"])
            counts["tasks_queued"] += r["queued"]
        except Exception as e:
            err = f"{type(e).__name__}: {str(e)[:500]}"
            counts["failed"] += 1
            logger.warning(json.dumps({"event": "coverage_audit_region_failed", "region": region, "error": err}, sort_keys=True))
            try:
                with get_session(eng) as s:
                    stat = s.get(CoverageStat, region) or CoverageStat(region=region)
                    stat.error = err
                    stat.updated_at = now
                    s.add(stat)
            except Exception:
                logger.exception("could not record audit failure for %s", region)

    try:
        with get_session(eng) as s:
            _reconcile(s, results, now)
            # worst N of every region audited in this pass, lagging or not
            worst = sorted(results, key=lambda r: (r["coverage"], r["provider_count"]))
            top = [
                {k: r[k] for k in ("region", "coverage", "our_count", "provider_count", "lagging")}
                for r in worst[: settings.lagging_top_n]
            ]
            _set_diagnostic(s, LAGGING_KEY, {"regions": top, "updated_at": now.isoformat()}, now)
        counts["lagging_top"] = [r["region"] for r in top if r["lagging"]]
    except Exception as e:
        counts["error"] = f"{type(e).__name__}: {str(e)[:500]}"

    logger.info(json.dumps({"event": "coverage_audit_done", **counts}, sort_keys=True))
    return counts


def _reconcile(s: Session, results: List[Dict[str, Any]], now: datetime) -> None:
    under = {r["region"]: r["coverage"] for r in results if r["lagging"]}
    healthy = [r["region"] for r in results if not r["lagging"]]

    existing = {row.region: row for row in s.execute(select(BackfillQueueEntry)).scalars()}
    for region, row in existing.items():
        if region not in under:
            s.delete(row)
    for region, cov in under.items():
        row = existing.get(region)
        if row is None:
            s.add(BackfillQueueEntry(region=region, coverage=cov, queued_at=now))
        else:
            row.coverage = cov

    if healthy:
        s.execute(
            delete(BacklogTask).where(BacklogTask.region.in_(healthy), BacklogTask.status == "pending")
        )


# -----------------------------
# Backlog consumption
# -----------------------------
def _requeue_stale(s: Session, older_than: datetime) -> int:
    res = s.execute(
        update(BacklogTask)
        .where(BacklogTask.status == "running", BacklogTask.started_at < older_than)
        .values(status="pending", last_error="requeued: stale running task")
    )
    return int(res.rowcount or 0)


def _claim_next(eng: Engine, now: datetime) -> Optional[BacklogTask]:
    with get_session(eng) as s:
        candidate_ids = s.execute(
            select(BacklogTask.id)
            .where(BacklogTask.status == "pending")
            .order_by(BacklogTask.created_at.asc(), BacklogTask.id.asc())
            .limit(5)
        ).scalars().all()
        for task_id in candidate_ids:
            res = s.execute(
                update(BacklogTask)
                .where(BacklogTask.id == task_id, BacklogTask.status == "pending")
                .values(status="running", started_at=now, attempts=BacklogTask.attempts + 1)
            )
            if res.rowcount == 1:
                return s.get(BacklogTask, task_id, populate_existing=True)
    return None


def consume_backlog_task(
    engine: Optional[Engine],
    client: Any,
    config: RuntimeConfig,
    settings: Settings,
    *,
    owner: Optional[str] = None,
    leases: Optional[LeaseManager] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run at most one backlog task. NEVER raises."""
    eng = engine or get_engine()
    now = now or utcnow()
    owner = owner or f"city:{uuid.uuid4().hex[:12]}"
    leases = leases or LeaseManager(eng)
    summary: Dict[str, Any] = {"ok": False, "task_id": None}

    with leases.held(IMPORT_CITY_LEASE, owner, settings.backlog_lease_ttl_s, now=now) as lease:
        if not lease.acquired:
            summary["skipped"] = "lease_busy"
            return summary

        try:
            with get_session(eng) as s:
                summary["requeued"] = _requeue_stale(s, now - timedelta(seconds=2 * settings.backlog_lease_ttl_s))
            task = _claim_next(eng, now)
        except Exception as e:
            summary["error"] = f"{type(e).__name__}: {str(e)[:500]}"
            return summary

        if task is None:
            summary.update({"ok": True, "skipped": "empty"})
            return summary

        summary.update({"task_id": task.id, "region": task.region, "attempts": task.attempts})
        try:
            res = client.fetch_around(task.lat, task.lon, int(task.radius_km) * 1000)
            if not res.ok:
                raise RuntimeError(res.error or "All Overpass mirrors failed")
            with get_session(eng) as s:
                result = import_candidates(
                    s, res.candidates, region=task.region, owner_uid=config.owner_uid(),
                    max_creates=settings.backlog_max_creates, decimals=settings.import_cell_decimals, now=now,
                )
                row = s.get(BacklogTask, task.id)
                row.status = "done"
                row.created = result.created
                row.skipped = result.skipped_existing
                row.last_error = None
                row.finished_at = now
            summary.update({"ok": True, "created": result.created, "skipped_existing": result.skipped_existing})
        except Exception as e:
            err = f"{type(e).__name__}: {str(e)[:500]}"
            summary["error"] = err
            try:
                with get_session(eng) as s:
                    row = s.get(BacklogTask, task.id)
                    if row is not None:
                        row.status = "pending"
                        row.last_error = err
            except Exception:
                logger.exception("could not return backlog task %s to pending", task.id)

    logger.info(json.dumps({"event": "backlog_task_done", **summary}, sort_keys=True))
    return summary


# -----------------------------
# Region / city stats index
# -----------------------------
def _sport_of(courts: Any) -> str:
    if isinstance(courts, list) and courts and isinstance(courts[0], dict):
        st = str(courts[0].get("sportType") or "basketball")
        if "tennis" in st:
            return "tennis"
        if "pickle" in st:
            return "pickleball"
    return "basketball"


def build_region_index(
    engine: Optional[Engine] = None,
    *,
    regions: Optional[Iterable[str]] = None,
    top_cities: int = 25,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Per-region totals, sport split and busiest cities. NEVER raises."""
    eng = engine or get_engine()
    now = now or utcnow()
    counts: Dict[str, Any] = {"regions": 0}
    try:
        for region in list(regions or REGION_ORDER):
            with get_session(eng) as s:
                rows = s.execute(
                    listed(select(Facility.city, Facility.courts).where(Facility.state == region))
                ).all()
                sports: Counter = Counter()
                cities: Counter = Counter()
                for city, courts in rows:
                    sports[_sport_of(courts)] += 1
                    if (city or "").strip():
                        cities[city.strip()] += 1
                stat = s.get(RegionStats, region) or RegionStats(region=region)
                stat.total = len(rows)
                stat.sports = dict(sports)
                stat.top_cities = [{"city": c, "count": n} for c, n in cities.most_common(top_cities)]
                stat.updated_at = now
                s.add(stat)
            counts["regions"] += 1
    except Exception as e:
        counts["error"] = f"{type(e).__name__}: {str(e)[:500]}"
    logger.info(json.dumps({"event": "region_index_built", **counts}, sort_keys=True))
    return counts
