from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from courtatlas.billing import CostGovernor
from courtatlas.cache import GeoCache
from courtatlas.config import RuntimeConfig, Settings
from courtatlas.db import init_db
from courtatlas.gateway import GeoGateway
from courtatlas.leases import LeaseManager
from courtatlas.models import CandidateFacility, FetchResult, ReverseResult, StandardPlace

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(run_secret="s3cret", alerts_webhook_url="")


@pytest.fixture
def config(engine, settings) -> RuntimeConfig:
    # ttl 0: every read sees the latest write, no memo surprises in tests
    return RuntimeConfig(engine, settings=settings, ttl_s=0)


# -----------------------------
# Fakes
# -----------------------------
def candidate(ext_id: str, lat: float, lon: float, *, kind: str = "node", **tags: Any) -> CandidateFacility:
    return CandidateFacility(
        provider="osm", external_type=kind, external_id=ext_id, tags=dict(tags), lat=lat, lon=lon,
    )


class FakeOverpass:
    """Scripted Overpass client; records calls."""

    def __init__(self):
        self.by_region: Dict[str, List[CandidateFacility]] = {}
        self.failing: set = set()
        self.counts: Dict[str, Optional[int]] = {}
        self.centers: Dict[str, list] = {}
        self.around: List[CandidateFacility] = []
        self.calls: List[Tuple[str, Any]] = []

    def fetch_candidates(self, region, *, sport_filter=None, nodes_only=True):
        self.calls.append(("candidates", (region, nodes_only)))
        if region in self.failing:
            return FetchResult(ok=False, error="All Overpass mirrors failed")
        return FetchResult(candidates=list(self.by_region.get(region, [])), endpoint="https://mirror.test/api")

    def fetch_around(self, lat, lon, radius_m, *, sport_filter=None):
        self.calls.append(("around", (lat, lon, radius_m)))
        if "around" in self.failing:
            return FetchResult(ok=False, error="All Overpass mirrors failed")
        return FetchResult(candidates=list(self.around), endpoint="https://mirror.test/api")

    def fetch_count(self, region, *, sport_filter=None):
        self.calls.append(("count", region))
        return self.counts.get(region, 0)

    def fetch_population_centers(self, region):
        self.calls.append(("centers", region))
        return list(self.centers.get(region, []))


class FakePlaces:
    """Places provider double. `None` results mean "call failed / unconfigured"."""

    def __init__(self, name: str = "fake", *, places=None, reverse=None, details=None, pages: int = 1):
        self.name = name
        self.places = places
        self.reverse = reverse
        self.details = details
        self.pages = pages
        self.calls: List[Tuple[str, Any]] = []

    def text_search(self, text, bias=None):
        self.calls.append(("text", text))
        return self.places

    def text_search_paged(self, text, bias=None, *, max_pages=3, page_size=20):
        self.calls.append(("paged", (text, max_pages, page_size)))
        if self.places is None:
            return None, 0
        return self.places, min(self.pages, max_pages)

    def reverse_geocode(self, lat, lon):
        self.calls.append(("reverse", (lat, lon)))
        return self.reverse

    def place_details(self, place_id):
        self.calls.append(("details", place_id))
        return self.details


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """requests.Session stand-in: pops scripted responses per (method, url)."""

    def __init__(self, script: Optional[Dict[str, list]] = None):
        self.script = script or {}
        self.headers: Dict[str, str] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def _next(self, method: str, url: str, kwargs: Dict[str, Any]):
        self.calls.append((method, url, kwargs))
        queue = self.script.get(url) or self.script.get("*") or []
        if not queue:
            return FakeResponse(500, None, "unscripted")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)


def place(pid: str = "p1", name: str = "Rucker Park", provider: str = "geoapify") -> StandardPlace:
    return StandardPlace(id=pid, display_name=name, formatted_address="155th St, New York, NY", lat=40.83, lon=-73.94, provider=provider)


@pytest.fixture
def overpass() -> FakeOverpass:
    return FakeOverpass()


@pytest.fixture
def cache(engine) -> GeoCache:
    return GeoCache(engine)


@pytest.fixture
def governor(engine, config) -> CostGovernor:
    return CostGovernor(engine, config=config, cost_per_call_cents=2)


@pytest.fixture
def leases(engine) -> LeaseManager:
    return LeaseManager(engine)


@pytest.fixture
def make_gateway(cache, governor, settings):
    def _make(low_cost: FakePlaces, commercial: FakePlaces) -> GeoGateway:
        return GeoGateway(cache=cache, governor=governor, low_cost=low_cost, commercial=commercial, settings=settings)

    return _make


@pytest.fixture
def empty_reverse() -> ReverseResult:
    return ReverseResult()
