"""
Provider abstraction layer: base interfaces.

This module defines:
- BasePlacesProvider: interface the geocoding / places clients implement.
- http_get_json / http_post_json: one-shot request helpers that turn every
  transport or decode failure into None (callers treat None as "absent").

Providers:
- geoapify (low-cost): text search + reverse geocode
- google (commercial): text search (single + paged), reverse geocode, place details
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..models import ReverseResult, StandardPlace

logger = logging.getLogger(__name__)

Bias = Optional[Tuple[float, float]]


def http_get_json(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout_s: float = 12.0,
    provider: str = "",
) -> Optional[Any]:
    try:
        resp = session.get(url, params=params, headers=headers, timeout=timeout_s)
    except requests.RequestException as e:
        logger.warning("[%s] GET failed: %s", provider, e)
        return None
    if resp.status_code >= 400:
        logger.warning("[%s] GET %s -> %s %s", provider, url, resp.status_code, (resp.text or "")[:200])
        return None
    try:
        return resp.json()
    except ValueError:
        logger.warning("[%s] non-JSON response from %s", provider, url)
        return None


def http_post_json(
    session: requests.Session,
    url: str,
    *,
    body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    timeout_s: float = 12.0,
    provider: str = "",
) -> Optional[Any]:
    try:
        resp = session.post(url, json=body, headers=headers, timeout=timeout_s)
    except requests.RequestException as e:
        logger.warning("[%s] POST failed: %s", provider, e)
        return None
    if resp.status_code >= 400:
        logger.warning("[%s] POST %s -> %s %s", provider, url, resp.status_code, (resp.text or "")[:200])
        return None
    try:
        return resp.json()
    except ValueError:
        logger.warning("[%s] non-JSON response from %s", provider, url)
        return None


def coerce_float(value: Any) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if f != f:  # NaN
        return None
    return f


class BasePlacesProvider:
    """
    Base interface for places / geocoding providers.

    Every method returns None when the provider is unconfigured or the call
    failed, and a (possibly empty) result when the call succeeded. The gateway
    charges only on non-None results.
    """

    name: str = "base"

    @property
    def configured(self) -> bool:
        raise NotImplementedError

    def text_search(self, text: str, bias: Bias = None) -> Optional[List[StandardPlace]]:
        raise NotImplementedError("text_search() must be implemented by subclasses")

    def reverse_geocode(self, lat: float, lon: float) -> Optional[ReverseResult]:
        raise NotImplementedError("reverse_geocode() must be implemented by subclasses")
