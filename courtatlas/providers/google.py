"""
Google Maps Platform client (commercial tier).

Endpoints:
- Places API (New) places:searchText, single page and paged via nextPageToken
- Geocoding API reverse lookup
- Places API (New) place details

This client does NOT enforce the budget; the gateway asks the cost governor
first and charges after. Keep it that way so every paid call is accounted once.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from ..models import ReverseResult, StandardPlace
from .base import BasePlacesProvider, Bias, coerce_float, http_get_json, http_post_json

SEARCH_TEXT_URL = "https://places.googleapis.com/v1/places:searchText"
DETAILS_URL = "https://places.googleapis.com/v1/places/{place_id}"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

SEARCH_FIELD_MASK = "places.id,places.displayName,places.formattedAddress,places.location,nextPageToken"
DETAILS_FIELD_MASK = "id,displayName,formattedAddress,location"

BIAS_RADIUS_M = 50000.0
# Google needs a moment before a nextPageToken becomes valid.
PAGE_WAITS_S = (1.5, 2.0)


def standardize_place(place: Dict[str, Any]) -> Optional[StandardPlace]:
    loc = place.get("location") or {}
    lat = coerce_float(loc.get("latitude"))
    lon = coerce_float(loc.get("longitude"))
    if lat is None or lon is None:
        return None
    display = place.get("displayName")
    if isinstance(display, dict):
        display = display.get("text")
    return StandardPlace(
        id=str(place.get("id") or ""),
        display_name=str(display or ""),
        formatted_address=str(place.get("formattedAddress") or ""),
        lat=lat,
        lon=lon,
        provider="google",
    )


def _component(components: List[Dict[str, Any]], kind: str, short: bool = False) -> str:
    for c in components:
        if kind in (c.get("types") or []):
            return str(c.get("short_name" if short else "long_name") or "")
    return ""


class GooglePlacesClient(BasePlacesProvider):
    name = "google"

    def __init__(
        self,
        api_key: str,
        *,
        timeout_s: float = 12.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._api_key = (api_key or "").strip()
        self._timeout_s = timeout_s
        self._session = session or requests.Session()
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self, field_mask: str) -> Dict[str, str]:
        return {"X-Goog-Api-Key": self._api_key, "X-Goog-FieldMask": field_mask}

    def _search_body(self, text: str, bias: Bias, page_size: int) -> Dict[str, Any]:
        body: Dict[str, Any] = {"textQuery": text, "pageSize": page_size}
        if bias is not None:
            body["locationBias"] = {
                "circle": {"center": {"latitude": bias[0], "longitude": bias[1]}, "radius": BIAS_RADIUS_M}
            }
        return body

    def _search_page(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = http_post_json(
            self._session,
            SEARCH_TEXT_URL,
            body=body,
            headers=self._headers(SEARCH_FIELD_MASK),
            timeout_s=self._timeout_s,
            provider=self.name,
        )
        return data if isinstance(data, dict) else None

    def text_search(self, text: str, bias: Bias = None) -> Optional[List[StandardPlace]]:
        if not self.configured:
            return None
        data = self._search_page(self._search_body(text, bias, 20))
        if data is None:
            return None
        places = (standardize_place(p) for p in data.get("places") or [] if isinstance(p, dict))
        return [p for p in places if p is not None]

    def text_search_paged(
        self,
        text: str,
        bias: Bias = None,
        *,
        max_pages: int = 3,
        page_size: int = 20,
    ) -> Tuple[Optional[List[StandardPlace]], int]:
        """
        Follow nextPageToken up to `max_pages`.

        Returns (places, pages_fetched). places is None only if the first page failed.
        """
        if not self.configured or max_pages < 1:
            return None, 0
        body = self._search_body(text, bias, page_size)
        out: List[StandardPlace] = []
        seen: set = set()
        pages = 0
        token: Optional[str] = None
        while pages < max_pages:
            if token:
                self._sleep(PAGE_WAITS_S[min(pages - 1, len(PAGE_WAITS_S) - 1)])
                body = dict(body, pageToken=token)
            data = self._search_page(body)
            if data is None:
                if pages == 0:
                    return None, 0
                break
            pages += 1
            for raw in data.get("places") or []:
                p = standardize_place(raw) if isinstance(raw, dict) else None
                if p is not None and p.id not in seen:
                    seen.add(p.id)
                    out.append(p)
            token = data.get("nextPageToken")
            if not token:
                break
        return out, pages

    def reverse_geocode(self, lat: float, lon: float) -> Optional[ReverseResult]:
        if not self.configured:
            return None
        data = http_get_json(
            self._session,
            GEOCODE_URL,
            params={"latlng": f"{lat},{lon}", "key": self._api_key},
            timeout_s=self._timeout_s,
            provider=self.name,
        )
        if not isinstance(data, dict) or data.get("status") not in ("OK", "ZERO_RESULTS"):
            return None
        results = data.get("results") or []
        if not results:
            return ReverseResult()
        comps = results[0].get("address_components") or []
        street = " ".join(x for x in (_component(comps, "street_number"), _component(comps, "route")) if x)
        return ReverseResult(
            address=street or str(results[0].get("formatted_address") or ""),
            city=_component(comps, "locality"),
            state=_component(comps, "administrative_area_level_1", short=True),
        )

    def place_details(self, place_id: str) -> Optional[StandardPlace]:
        if not self.configured or not place_id:
            return None
        data = http_get_json(
            self._session,
            DETAILS_URL.format(place_id=quote(place_id, safe="")),
            headers=self._headers(DETAILS_FIELD_MASK),
            timeout_s=self._timeout_s,
            provider=self.name,
        )
        if not isinstance(data, dict):
            return None
        return standardize_place(data)
