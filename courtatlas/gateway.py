"""
Geo gateway: text search, reverse geocode, place details.

Read path for clients. Order for every call:
    cache -> low-cost provider (Geoapify) -> commercial provider (Google)
The commercial step runs only when the low-cost result is empty/absent AND the
kill switch allows it AND the monthly budget has calls left; a successful call
is charged exactly once.

Every public method fails soft: any internal error returns a well-formed
empty / placeholder payload. Empty results are not cached.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .billing import CostGovernor
from .cache import GeoCache, cache_key
from .config import GOOGLE_PROVIDER, MIN_QUERY_LENGTH, REVERSE_TTL_DAYS, TEXT_TTL_DAYS, Settings, clamp_int
from .models import ReverseResult, StandardPlace
from .providers.base import BasePlacesProvider, coerce_float
from .providers.google import GooglePlacesClient

logger = logging.getLogger(__name__)

EMPTY_REVERSE: Dict[str, str] = {"address": "", "city": "", "state": ""}


def details_placeholder(place_id: str) -> Dict[str, Any]:
    return {"id": place_id or "", "displayName": "Unknown", "formattedAddress": "", "location": None, "provider": "google"}


def parse_bias(raw: Any) -> Optional[Tuple[float, float]]:
    """Accepts {"lat","lng"} / {"latitude","longitude"} / [lat, lng]; anything else -> None."""
    if isinstance(raw, dict):
        lat = coerce_float(raw.get("lat", raw.get("latitude")))
        lng = coerce_float(raw.get("lng", raw.get("lon", raw.get("longitude"))))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat, lng = coerce_float(raw[0]), coerce_float(raw[1])
    else:
        return None
    if lat is None or lng is None or not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        return None
    return lat, lng


def _places_payload(places: List[StandardPlace]) -> Dict[str, Any]:
    return {"places": [p.to_dict() for p in places]}


class GeoGateway:
    def __init__(
        self,
        *,
        cache: GeoCache,
        governor: CostGovernor,
        low_cost: BasePlacesProvider,
        commercial: GooglePlacesClient,
        settings: Optional[Settings] = None,
    ):
        self.cache = cache
        self.governor = governor
        self.low_cost = low_cost
        self.commercial = commercial
        self.settings = settings or Settings()

    # -----------------------------
    # Text search
    # -----------------------------
    def text_search(self, text: Any, bias: Any = None, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        try:
            q = str(text or "").strip()
            if len(q) < MIN_QUERY_LENGTH:
                return {"places": []}
            b = parse_bias(bias)
            key = cache_key("text", {"text": q, "bias": list(b) if b else None})
            hit = self.cache.lookup(key, now=now)
            if hit.hit:
                return hit.value

            places = self.low_cost.text_search(q, b)
            if not places:
                allowed = self.governor.commercial_allowed(GOOGLE_PROVIDER, now=now)
                if allowed > 0:
                    paid = self.commercial.text_search(q, b)
                    if paid is not None:
                        self.governor.charge_calls(GOOGLE_PROVIDER, 1, now=now)
                        places = paid

            payload = _places_payload(places or [])
            if payload["places"]:
                self.cache.set(key, payload, TEXT_TTL_DAYS, now=now)
            return payload
        except Exception:
            logger.exception("text_search failed (soft-fail)")
            return {"places": []}

    def text_search_paged(
        self,
        text: Any,
        bias: Any = None,
        *,
        page_all: bool = False,
        max_pages: Any = 3,
        page_size: Any = 20,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Like text_search, but the commercial step may follow result pages.

        Pages allowed = min(max_pages, remaining calls); charge = min(pages fetched, allowed).
        """
        try:
            q = str(text or "").strip()
            if len(q) < MIN_QUERY_LENGTH:
                return {"places": []}
            b = parse_bias(bias)
            pages_cap = clamp_int(max_pages, 1, 6, 3) if page_all else 1
            size = clamp_int(page_size, 10, 20, 20)
            key = cache_key("textv2", {"text": q, "bias": list(b) if b else None, "pages": pages_cap, "size": size})
            hit = self.cache.lookup(key, now=now)
            if hit.hit:
                return hit.value

            places = self.low_cost.text_search(q, b)
            if not places:
                remaining = self.governor.commercial_allowed(GOOGLE_PROVIDER, now=now)
                allowed = min(pages_cap, remaining)
                if allowed > 0:
                    paid, fetched = self.commercial.text_search_paged(q, b, max_pages=allowed, page_size=size)
                    if paid is not None:
                        self.governor.charge_calls(GOOGLE_PROVIDER, min(fetched, allowed), now=now)
                        places = paid

            payload = _places_payload(places or [])
            if payload["places"]:
                self.cache.set(key, payload, TEXT_TTL_DAYS, now=now)
            return payload
        except Exception:
            logger.exception("text_search_paged failed (soft-fail)")
            return {"places": []}

    # -----------------------------
    # Reverse geocode
    # -----------------------------
    def reverse_geocode(self, lat: Any, lng: Any, *, now: Optional[datetime] = None) -> Dict[str, str]:
        try:
            la, lo = coerce_float(lat), coerce_float(lng)
            if la is None or lo is None or not (-90 <= la <= 90) or not (-180 <= lo <= 180):
                return dict(EMPTY_REVERSE)
            d = self.settings.reverse_cache_decimals
            key = cache_key("rev", {"lat": round(la, d), "lng": round(lo, d)})
            hit = self.cache.lookup(key, now=now)
            if hit.hit:
                return hit.value

            result = self.low_cost.reverse_geocode(la, lo)
            if result is None or result.is_empty():
                if self.governor.commercial_allowed(GOOGLE_PROVIDER, now=now) > 0:
                    paid = self.commercial.reverse_geocode(la, lo)
                    if paid is not None:
                        self.governor.charge_calls(GOOGLE_PROVIDER, 1, now=now)
                        result = paid

            if result is None or result.is_empty():
                return dict(EMPTY_REVERSE)
            payload = result.to_dict()
            self.cache.set(key, payload, REVERSE_TTL_DAYS, now=now)
            return payload
        except Exception:
            logger.exception("reverse_geocode failed (soft-fail)")
            return dict(EMPTY_REVERSE)

    # -----------------------------
    # Place details (commercial only)
    # -----------------------------
    def place_details(self, place_id: Any, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        pid = str(place_id or "").strip()
        try:
            if not pid:
                return details_placeholder("")
            key = cache_key("det", {"placeId": pid})
            hit = self.cache.lookup(key, now=now)
            if hit.hit:
                return hit.value

            details: Optional[StandardPlace] = None
            if self.governor.commercial_allowed(GOOGLE_PROVIDER, now=now) > 0:
                details = self.commercial.place_details(pid)
                if details is not None:
                    self.governor.charge_calls(GOOGLE_PROVIDER, 1, now=now)
            if details is None:
                return details_placeholder(pid)
            payload = details.to_dict()
            self.cache.set(key, payload, TEXT_TTL_DAYS, now=now)
            return payload
        except Exception:
            logger.exception("place_details failed (soft-fail)")
            return details_placeholder(pid)


class CachedReverseGeocoder:
    """
    Reverse geocoder for batch jobs: cache, then the low-cost provider only.

    Never reaches the commercial provider, so batch repairs cannot spend budget.
    """

    def __init__(self, cache: GeoCache, provider: BasePlacesProvider, *, decimals: int = 5):
        self.cache = cache
        self.provider = provider
        self.decimals = decimals

    def reverse_geocode(self, lat: float, lon: float) -> Optional[ReverseResult]:
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return None
        key = cache_key("rev", {"lat": round(lat, self.decimals), "lng": round(lon, self.decimals)})
        cached = self.cache.get(key)
        if isinstance(cached, dict):
            return ReverseResult(
                address=str(cached.get("address") or ""),
                city=str(cached.get("city") or ""),
                state=str(cached.get("state") or ""),
            )
        result = self.provider.reverse_geocode(lat, lon)
        if result is not None and not result.is_empty():
            self.cache.set(key, result.to_dict(), REVERSE_TTL_DAYS)
        return result
