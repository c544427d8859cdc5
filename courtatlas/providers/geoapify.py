"""Geoapify client (low-cost tier): places text search + reverse geocode."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests

from ..config import USER_AGENT
from ..models import ReverseResult, StandardPlace
from .base import BasePlacesProvider, Bias, coerce_float, http_get_json

PLACES_URL = "https://api.geoapify.com/v2/places"
REVERSE_URL = "https://api.geoapify.com/v1/geocode/reverse"


def standardize_feature(feature: Dict[str, Any]) -> Optional[StandardPlace]:
    props = feature.get("properties") or {}
    lat = coerce_float(props.get("lat"))
    lon = coerce_float(props.get("lon"))
    if lat is None or lon is None:
        coords = (feature.get("geometry") or {}).get("coordinates") or []
        if len(coords) >= 2:
            lon, lat = coerce_float(coords[0]), coerce_float(coords[1])
    if lat is None or lon is None:
        return None
    return StandardPlace(
        id=str(props.get("place_id") or ""),
        display_name=str(props.get("name") or props.get("address_line1") or props.get("formatted") or ""),
        formatted_address=str(props.get("formatted") or props.get("address_line2") or ""),
        lat=lat,
        lon=lon,
        provider="geoapify",
    )


class GeoapifyClient(BasePlacesProvider):
    name = "geoapify"

    def __init__(self, api_key: str, *, timeout_s: float = 12.0, session: Optional[requests.Session] = None):
        self._api_key = (api_key or "").strip()
        self._timeout_s = timeout_s
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def text_search(self, text: str, bias: Bias = None) -> Optional[List[StandardPlace]]:
        if not self.configured:
            return None
        params: Dict[str, Any] = {"text": text, "limit": 20, "apiKey": self._api_key}
        if bias is not None:
            params["bias"] = f"proximity:{bias[1]},{bias[0]}"
        data = http_get_json(self._session, PLACES_URL, params=params, timeout_s=self._timeout_s, provider=self.name)
        if not isinstance(data, dict):
            return None
        places = (standardize_feature(f) for f in data.get("features") or [] if isinstance(f, dict))
        return [p for p in places if p is not None]

    def reverse_geocode(self, lat: float, lon: float) -> Optional[ReverseResult]:
        if not self.configured:
            return None
        params = {"lat": lat, "lon": lon, "apiKey": self._api_key}
        data = http_get_json(self._session, REVERSE_URL, params=params, timeout_s=self._timeout_s, provider=self.name)
        if not isinstance(data, dict):
            return None
        features = data.get("features") or []
        if not features:
            return None
        props = (features[0] or {}).get("properties") or {}
        return ReverseResult(
            address=str(props.get("formatted") or props.get("address_line1") or "").strip(),
            city=str(props.get("city") or props.get("town") or props.get("village") or "").strip(),
            state=str(props.get("state_code") or props.get("state") or "").strip(),
        )
