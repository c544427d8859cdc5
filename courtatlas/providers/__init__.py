"""
Provider abstraction entrypoint.

- overpass: open map data (candidates, counts, population centers)
- geoapify: low-cost places / reverse geocode
- google: commercial places / reverse geocode / details (budget-gated by the gateway)
"""

from __future__ import annotations

from typing import Dict, Type

from .base import BasePlacesProvider
from .geoapify import GeoapifyClient
from .google import GooglePlacesClient
from .overpass import OverpassClient, UnknownRegionError

_PLACES_PROVIDERS: Dict[str, Type[BasePlacesProvider]] = {
    GeoapifyClient.name: GeoapifyClient,
    GooglePlacesClient.name: GooglePlacesClient,
}


def get_places_provider(name: str, api_key: str, **kwargs) -> BasePlacesProvider:
    """Resolve a places provider by short name ('geoapify' / 'google')."""
    cls = _PLACES_PROVIDERS.get((name or "").strip().lower())
    if cls is None:
        raise ValueError(f"Unknown places provider: {name!r}")
    return cls(api_key, **kwargs)


__all__ = [
    "BasePlacesProvider",
    "GeoapifyClient",
    "GooglePlacesClient",
    "OverpassClient",
    "UnknownRegionError",
    "get_places_provider",
]
