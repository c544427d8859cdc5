"""
Wiring: one place that builds the collaborators every entry point needs.

Flows call build_services() per run; the API builds one in its lifespan.
Tests construct Services directly with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from .billing import CostGovernor
from .cache import GeoCache
from .config import GOOGLE_CENTS_PER_CALL, RuntimeConfig, Settings, load_settings
from .db import get_engine
from .gateway import CachedReverseGeocoder, GeoGateway
from .leases import LeaseManager
from .providers import get_places_provider
from .providers.base import BasePlacesProvider
from .providers.google import GooglePlacesClient
from .providers.overpass import OverpassClient


@dataclass
class Services:
    engine: Engine
    settings: Settings
    config: RuntimeConfig
    cache: GeoCache
    governor: CostGovernor
    overpass: OverpassClient
    low_cost: BasePlacesProvider
    commercial: GooglePlacesClient
    gateway: GeoGateway
    leases: LeaseManager

    def repair_geocoder(self) -> CachedReverseGeocoder:
        return CachedReverseGeocoder(self.cache, self.low_cost, decimals=self.settings.reverse_cache_decimals)


def build_services(engine: Optional[Engine] = None, settings: Optional[Settings] = None) -> Services:
    eng = engine or get_engine()
    settings = settings or load_settings()
    config = RuntimeConfig(eng, settings=settings)
    cache = GeoCache(eng)
    governor = CostGovernor(eng, config=config, cost_per_call_cents=GOOGLE_CENTS_PER_CALL)
    low_cost = get_places_provider("geoapify", settings.geoapify_api_key, timeout_s=settings.provider_timeout_s)
    commercial = get_places_provider("google", settings.google_api_key, timeout_s=settings.provider_timeout_s)
    return Services(
        engine=eng,
        settings=settings,
        config=config,
        cache=cache,
        governor=governor,
        overpass=OverpassClient(timeout_s=settings.overpass_timeout_s),
        low_cost=low_cost,
        commercial=commercial,
        gateway=GeoGateway(cache=cache, governor=governor, low_cost=low_cost, commercial=commercial, settings=settings),
        leases=LeaseManager(eng),
    )
