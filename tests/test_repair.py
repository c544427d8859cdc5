from courtatlas.config import REPAIR_CURSOR_K, REPAIR_ENABLED_K, REPAIR_SETTINGS_K
from courtatlas.coverage import get_diagnostic
from courtatlas.db import get_session
from courtatlas.models import ReverseResult
from courtatlas.repair import STATUS_KEY, RepairSettings, run_repair_batch, run_repair_once, run_scheduled_repair
from courtatlas.schema import Facility

from conftest import NOW, FakePlaces


def _add(engine, fid, *, name="", address="", city="", state="", lat=30.2671, lon=-97.7431, **kw):
    with get_session(engine) as s:
        s.add(Facility(id=fid, name=name, address=address, city=city, state=state, lat=lat, lon=lon,
                       courts=kw.get("courts", []), dup_of=kw.get("dup_of")))


def _get(engine, fid):
    with get_session(engine) as s:
        return s.get(Facility, fid)


def test_settings_from_mapping_accepts_camel_case_and_clamps():
    st = RepairSettings.from_mapping({"mode": "Ultra_Conservative", "capPerRun": "25", "clusterDecimals": 9, "pageSize": 5})
    assert st.mode == "conservative"
    assert st.cap_per_run == 25
    assert st.cluster_decimals == 5
    assert st.page_size == 200
    assert RepairSettings.from_mapping({"mode": "bogus"}).mode == "balanced"


def test_conservative_parses_address_without_calls(engine):
    _add(engine, "a", address="100 Congress Ave, Austin, TX 78701")
    geo = FakePlaces(reverse=ReverseResult("x", "y", "z"))

    out = run_repair_batch(engine, geo, RepairSettings(mode="conservative"), now=NOW)
    assert out["updated"] == 1
    assert geo.calls == []
    f = _get(engine, "a")
    assert (f.city, f.state) == ("Austin", "TX")
    assert f.name == "Austin — Basketball Courts"
    assert f.address == "100 Congress Ave, Austin, TX 78701"


def test_balanced_geocodes_once_per_cluster(engine):
    _add(engine, "a", name="basketball court")
    _add(engine, "b", lat=30.2672, lon=-97.7432, courts=[{"sportType": "tennisSingles"}])
    geo = FakePlaces(reverse=ReverseResult("1 Main St", "Austin", "Texas"))

    out = run_repair_batch(engine, geo, RepairSettings(mode="balanced"), now=NOW)
    assert out["rg_calls"] == 1
    assert out["updated"] == 2
    a, b = _get(engine, "a"), _get(engine, "b")
    assert (a.address, a.city, a.state) == ("1 Main St", "Austin", "TX")
    assert a.name == "1 Main St — Basketball Courts"
    assert (b.city, b.state) == ("Austin", "TX")
    assert b.name == "1 Main St — Tennis Courts"


def test_cap_per_run_limits_reverse_calls(engine):
    _add(engine, "a")
    _add(engine, "b", lat=40.0, lon=-75.0)
    geo = FakePlaces(reverse=ReverseResult("1 Main St", "Austin", "TX"))
    out = run_repair_batch(engine, geo, RepairSettings(mode="full", cap_per_run=1), now=NOW)
    assert out["rg_calls"] == 1
    assert len(geo.calls) == 1


def test_good_records_missing_coords_and_duplicates_are_left_alone(engine):
    _add(engine, "good", name="Rucker Park", address="155th St", city="New York", state="NY")
    _add(engine, "nocoords", lat=None, lon=None)
    _add(engine, "dup", dup_of="good")
    out = run_repair_batch(engine, FakePlaces(reverse=None), RepairSettings(mode="full"), now=NOW)
    assert out["scanned"] == 2
    assert out["updated"] == 0
    assert out["no_coords"] == 1
    assert _get(engine, "good").name == "Rucker Park"


def test_deliberate_casing_survives(engine):
    _add(engine, "a", name="iPark Courts", address="", city="", state="")
    geo = FakePlaces(reverse=ReverseResult("9 elm st", "austin", "tx"))
    run_repair_batch(engine, geo, RepairSettings(mode="full"), now=NOW)
    f = _get(engine, "a")
    assert f.name == "iPark Courts"
    assert (f.address, f.city, f.state) == ("9 Elm St", "Austin", "TX")


def test_run_once_persists_cursor_when_time_runs_out(engine, config):
    for fid in ("a", "b", "c"):
        _add(engine, fid, lat=30 + ord(fid) * 0.01)
    ticks = iter([0.0, 0.0, 1000.0, 1000.0, 1000.0])

    res = run_repair_once(
        engine, FakePlaces(reverse=None), config, RepairSettings(mode="conservative"),
        time_budget_s=10, clock=lambda: next(ticks), now=NOW,
    )
    assert res["timed_out"] is True
    assert res["cursor"] == "a"
    assert config.get(REPAIR_CURSOR_K) == "a"

    finish = run_repair_once(engine, FakePlaces(reverse=None), config, RepairSettings(mode="conservative"), now=NOW)
    assert finish["done"] is True
    assert finish["scanned"] == 2
    assert config.get(REPAIR_CURSOR_K) is None
    status = get_diagnostic(engine, STATUS_KEY)
    assert status["mode"] == "conservative"
    assert status["last_error"] is None


def test_scheduled_repair_is_gated(engine, config):
    assert run_scheduled_repair(engine, FakePlaces(), config, now=NOW) == {"skipped": "disabled"}
    config.set(REPAIR_ENABLED_K, True)
    config.set(REPAIR_SETTINGS_K, {"mode": "conservative"})
    _add(engine, "a", address="1 Main St, Boise, ID")
    out = run_scheduled_repair(engine, FakePlaces(), config, now=NOW)
    assert out["updated"] == 1
    assert _get(engine, "a").state == "ID"


def test_padded_values_are_not_treated_as_edits(engine):
    _add(engine, "a", name="  iPark Courts ", address="  ", city="", state="")
    geo = FakePlaces(reverse=ReverseResult("9 elm st", "austin", "tx"))
    run_repair_batch(engine, geo, RepairSettings(mode="full"), now=NOW)
    f = _get(engine, "a")
    assert f.name == "iPark Courts"
    assert (f.address, f.city, f.state) == ("9 Elm St", "Austin", "TX")


def test_whitespace_only_difference_is_not_written(engine):
    _add(engine, "a", name=" Rucker Park ", address="1 main st ", city="", state="")
    out = run_repair_batch(engine, FakePlaces(reverse=None), RepairSettings(mode="conservative"), now=NOW)
    assert out["updated"] == 0
    f = _get(engine, "a")
    assert (f.name, f.address) == (" Rucker Park ", "1 main st ")
