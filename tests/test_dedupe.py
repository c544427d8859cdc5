from datetime import timedelta

from sqlalchemy import select

from courtatlas.db import get_session
from courtatlas.dedupe import DUPLICATE_STATUS, cell_key, dedupe_sweep, import_candidates
from courtatlas.schema import Facility, LocationIndexEntry

from conftest import NOW, candidate


def _import(engine, cands, **kw):
    with get_session(engine) as s:
        return import_candidates(s, cands, region="TX", owner_uid="owner-1", max_creates=kw.get("max_creates", 100), now=NOW)


def test_cell_key_rounds_to_five_decimals():
    assert cell_key(30.1234567, -97.7654321) == "30.12346,-97.76543"
    assert cell_key(30.1, -97.7, 3) == "30.100,-97.700"


def test_import_is_idempotent(engine):
    cands = [candidate("1", 30.1, -97.7, sport="basketball", name="Zilker Courts")]
    first = _import(engine, cands)
    second = _import(engine, cands)

    assert first.created == 1
    assert second.created == 0
    assert second.skipped_existing == 1
    with get_session(engine) as s:
        assert len(s.execute(select(Facility)).scalars().all()) == 1


def test_created_record_shape(engine):
    _import(engine, [candidate("7", 30.2, -97.8, kind="way", sport="tennis", surface="hard", lit="yes",
                               **{"addr:housenumber": "12", "addr:street": "Main St", "addr:city": "Austin"})])
    with get_session(engine) as s:
        f = s.get(Facility, "osm:way:7")
        assert f.source == "osm"
        assert f.source_id == "way/7"
        assert f.license == "ODbL"
        assert f.address == "12 Main St"
        assert f.city == "Austin"
        assert f.state == "TX"
        assert f.approved is True
        assert f.courts[0]["sportType"] == "tennisSingles"
        assert f.courts[0]["lighted"] is True
        assert f.courts[0]["gotNextQueue"] == []
        assert s.get(LocationIndexEntry, cell_key(30.2, -97.8)).primary_id == "osm:way:7"


def test_same_cell_merges_provenance_instead_of_creating(engine):
    res = _import(engine, [candidate("1", 30.1, -97.7), candidate("2", 30.1000001, -97.7000001, kind="way")])
    assert res.created == 1
    assert res.merged == 1
    assert res.skipped_existing == 1
    with get_session(engine) as s:
        primary = s.get(Facility, "osm:node:1")
        assert primary.alt_sources == [{"type": "osm", "ref": "way/2"}]
        assert s.get(Facility, "osm:way:2") is None


def test_max_creates_sets_more(engine):
    cands = [candidate(str(i), 30 + i * 0.01, -97.0) for i in range(5)]
    res = _import(engine, cands, max_creates=3)
    assert res.created == 3
    assert res.more is True

    res2 = _import(engine, cands, max_creates=3)
    assert res2.created == 2
    assert res2.skipped_existing == 3
    assert res2.more is False


def _facility(fid, source, created_at, lat=30.5, lon=-97.5, **kw):
    return Facility(
        id=fid, name=kw.get("name", fid), source=source, source_id=kw.get("source_id"),
        lat=lat, lon=lon, state="TX", courts=[], alt_sources=kw.get("alt_sources", []),
        approved=True, review_status="approved", created_at=created_at, updated_at=created_at,
    )


def test_sweep_prefers_user_submitted_primary_regardless_of_age(engine):
    with get_session(engine) as s:
        # the imported record is older; the user-submitted one must still win
        s.add(_facility("osm:node:5", "osm", NOW - timedelta(days=10), source_id="node/5"))
        s.add(_facility("user-abc", "user", NOW - timedelta(days=1)))

    counts = dedupe_sweep(engine, window=100, max_fixes=10, now=NOW)
    assert counts["fixed"] == 1
    assert "error" not in counts

    with get_session(engine) as s:
        dup = s.get(Facility, "osm:node:5")
        primary = s.get(Facility, "user-abc")
        assert dup.dup_of == "user-abc"
        assert dup.approved is False
        assert dup.review_status == DUPLICATE_STATUS
        assert primary.dup_of is None
        assert {"type": "osm", "ref": "node/5"} in primary.alt_sources
        assert s.get(LocationIndexEntry, cell_key(30.5, -97.5)).primary_id == "user-abc"


def test_sweep_is_stable_on_rerun(engine):
    with get_session(engine) as s:
        s.add(_facility("u1", "user", NOW - timedelta(days=3)))
        s.add(_facility("u2", "user", NOW - timedelta(days=2)))
        s.add(_facility("far", "user", NOW, lat=10.0, lon=10.0))

    assert dedupe_sweep(engine, now=NOW)["fixed"] == 1
    again = dedupe_sweep(engine, now=NOW)
    assert again["fixed"] == 0
    with get_session(engine) as s:
        assert s.get(Facility, "u2").dup_of == "u1"
        assert s.get(Facility, "far").dup_of is None


def test_sweep_respects_max_fixes(engine):
    with get_session(engine) as s:
        for i in range(4):
            s.add(_facility(f"u{i}", "user", NOW - timedelta(hours=10 - i)))
    assert dedupe_sweep(engine, max_fixes=2, now=NOW)["fixed"] == 2


def test_sweep_keeps_user_record_identity_as_provenance(engine):
    with get_session(engine) as s:
        s.add(_facility("user-old", "user", NOW - timedelta(days=5)))
        s.add(_facility("user-new", "user", NOW - timedelta(days=1)))

    assert dedupe_sweep(engine, now=NOW)["fixed"] == 1
    with get_session(engine) as s:
        winner = s.get(Facility, "user-old")
        assert s.get(Facility, "user-new").dup_of == "user-old"
        assert {"type": "user", "ref": "user-new"} in winner.alt_sources
