from dataclasses import replace
from datetime import timedelta

from sqlalchemy import select

from courtatlas.coverage import (
    LAGGING_KEY,
    build_region_index,
    consume_backlog_task,
    coverage_ratio,
    get_diagnostic,
    radius_km_for_population,
    run_coverage_audit,
)
from courtatlas.db import get_session
from courtatlas.leases import IMPORT_CITY_LEASE
from courtatlas.models import PopulationCenter
from courtatlas.schema import BackfillQueueEntry, BacklogTask, CoverageStat, Facility, RegionStats

from conftest import NOW, candidate


def _seed(engine, region, n, *, city="Austin", sport="basketball", dup_of=None):
    with get_session(engine) as s:
        for i in range(n):
            s.add(
                Facility(
                    id=f"{region}-{city}-{i}-{dup_of or ''}", name="x", state=region, city=city,
                    lat=30 + i * 0.01, lon=-97.0, courts=[{"sportType": sport}], dup_of=dup_of,
                )
            )


def test_coverage_ratio_edges():
    assert coverage_ratio(5, 10) == 0.5
    assert coverage_ratio(20, 10) == 1.0
    assert coverage_ratio(3, 0) == 1.0
    assert coverage_ratio(0, 0) == 0.0


def test_radius_tiers():
    assert radius_km_for_population(250_000) == 25
    assert radius_km_for_population(50_000) == 12
    assert radius_km_for_population(900) == 8


def test_audit_queues_centers_for_lagging_region(engine, overpass, settings):
    _seed(engine, "TX", 2)
    _seed(engine, "TX", 5, dup_of="TX-Austin-0-")  # duplicates do not count as coverage
    _seed(engine, "CA", 9)
    overpass.counts = {"TX": 10, "CA": 10}
    overpass.centers["TX"] = [
        PopulationCenter("Houston", 2_300_000, 29.76, -95.37),
        PopulationCenter("Marfa", 1_800, 30.31, -104.02),
    ]

    counts = run_coverage_audit(engine, overpass, settings, regions=["TX", "CA"], now=NOW)
    assert counts["audited"] == 2
    assert counts["lagging"] == 1
    assert counts["tasks_queued"] == 2
    assert counts["lagging_top"] == ["TX"]

    with get_session(engine) as s:
        tx = s.get(CoverageStat, "TX")
        assert tx.our_count == 2 and tx.provider_count == 10
        assert abs(tx.coverage - 0.2) < 1e-9
        tasks = {t.center_name: t for t in s.execute(select(BacklogTask)).scalars()}
        assert tasks["Houston"].radius_km == 25
        assert tasks["Marfa"].radius_km == 8
        assert [q.region for q in s.execute(select(BackfillQueueEntry)).scalars()] == ["TX"]

    lagging = get_diagnostic(engine, LAGGING_KEY)
    assert lagging["regions"][0]["region"] == "TX"


def test_audit_is_idempotent_for_queued_tasks(engine, overpass, settings):
    overpass.counts = {"TX": 10}
    overpass.centers["TX"] = [PopulationCenter("Austin", 960_000, 30.27, -97.74)]
    run_coverage_audit(engine, overpass, settings, regions=["TX"], now=NOW)
    again = run_coverage_audit(engine, overpass, settings, regions=["TX"], now=NOW + timedelta(hours=1))
    assert again["tasks_queued"] == 0


def test_recovered_region_is_reconciled_out(engine, overpass, settings):
    overpass.counts = {"TX": 10}
    overpass.centers["TX"] = [PopulationCenter("Austin", 960_000, 30.27, -97.74)]
    run_coverage_audit(engine, overpass, settings, regions=["TX"], now=NOW)

    _seed(engine, "TX", 9)
    run_coverage_audit(engine, overpass, settings, regions=["TX"], now=NOW + timedelta(hours=1))
    with get_session(engine) as s:
        assert s.execute(select(BackfillQueueEntry)).scalars().all() == []
        assert s.execute(select(BacklogTask)).scalars().all() == []


def test_audit_records_per_region_failure_and_continues(engine, overpass, settings):
    overpass.counts = {"TX": None, "CA": 0}
    counts = run_coverage_audit(engine, overpass, settings, regions=["TX", "CA"], now=NOW)
    assert counts["failed"] == 1
    assert counts["audited"] == 1
    with get_session(engine) as s:
        assert "mirrors failed" in s.get(CoverageStat, "TX").error


def _task(engine, tid="t1", created_at=NOW, status="pending", started_at=None):
    with get_session(engine) as s:
        s.add(BacklogTask(id=tid, region="TX", center_name=tid, population=1000, lat=30.0, lon=-97.0,
                          radius_km=8, status=status, attempts=0, created_at=created_at, started_at=started_at))


def test_backlog_consumes_oldest_task(engine, overpass, config, settings, leases):
    _task(engine, "newer", created_at=NOW - timedelta(minutes=1))
    _task(engine, "older", created_at=NOW - timedelta(minutes=5))
    overpass.around = [candidate("99", 30.01, -97.01)]

    out = consume_backlog_task(engine, overpass, config, settings, owner="w", leases=leases, now=NOW)
    assert out["ok"] and out["task_id"] == "older"
    assert out["created"] == 1
    assert overpass.calls == [("around", (30.0, -97.0, 8000))]
    with get_session(engine) as s:
        t = s.get(BacklogTask, "older")
        assert t.status == "done" and t.attempts == 1 and t.created == 1
        assert s.get(BacklogTask, "newer").status == "pending"


def test_backlog_failure_returns_task_to_pending(engine, overpass, config, settings, leases):
    _task(engine)
    overpass.failing.add("around")
    out = consume_backlog_task(engine, overpass, config, settings, owner="w", leases=leases, now=NOW)
    assert "error" in out
    with get_session(engine) as s:
        t = s.get(BacklogTask, "t1")
        assert t.status == "pending"
        assert t.attempts == 1
        assert "mirrors failed" in t.last_error


def test_backlog_empty_and_busy(engine, overpass, config, settings, leases):
    assert consume_backlog_task(engine, overpass, config, settings, owner="w", leases=leases, now=NOW)["skipped"] == "empty"
    leases.try_acquire(IMPORT_CITY_LEASE, "someone", 720, now=NOW)
    assert consume_backlog_task(engine, overpass, config, settings, owner="w", leases=leases, now=NOW)["skipped"] == "lease_busy"


def test_stale_running_task_is_requeued(engine, overpass, config, settings, leases):
    _task(engine, status="running", started_at=NOW - timedelta(hours=2))
    out = consume_backlog_task(engine, overpass, config, settings, owner="w", leases=leases, now=NOW)
    assert out["requeued"] == 1
    assert out["task_id"] == "t1"


def test_region_index(engine):
    _seed(engine, "TX", 3, city="Austin")
    _seed(engine, "TX", 1, city="Dallas", sport="tennisSingles")
    counts = build_region_index(engine, regions=["TX"], now=NOW)
    assert counts["regions"] == 1
    with get_session(engine) as s:
        stat = s.get(RegionStats, "TX")
        assert stat.total == 4
        assert stat.sports == {"basketball": 3, "tennis": 1}
        assert stat.top_cities[0] == {"city": "Austin", "count": 3}


def test_lagging_summary_lists_worst_regions_even_above_threshold(engine, overpass, settings):
    _seed(engine, "TX", 1)
    _seed(engine, "CA", 8)
    _seed(engine, "NY", 10)
    overpass.counts = {"TX": 10, "CA": 10, "NY": 10}

    counts = run_coverage_audit(engine, overpass, replace(settings, lagging_top_n=2), regions=["NY", "CA", "TX"], now=NOW)
    assert counts["lagging"] == 1
    assert counts["lagging_top"] == ["TX"]

    regions = get_diagnostic(engine, LAGGING_KEY)["regions"]
    assert [r["region"] for r in regions] == ["TX", "CA"]
    assert [r["lagging"] for r in regions] == [True, False]
