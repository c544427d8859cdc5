"""
OSM / Overpass source for the facility importer.

Reliability guardrails:
- Public Overpass instances rate-limit / 504. Requests go through RetryPolicy
  (mirror rotation + linear backoff with jitter).
- Failure across every mirror is returned as FetchResult(ok=False, ...), never raised.

Output:
- CandidateFacility objects (provider='osm'); ways / relations carry their centroid.
"""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import OVERPASS_MIRRORS, REGION_ISO, SPORTS_REGEX, USER_AGENT
from ..http import RetryPolicy, linear_jitter_backoff
from ..models import CandidateFacility, FetchResult, PopulationCenter

logger = logging.getLogger(__name__)

ALL_MIRRORS_FAILED = "All Overpass mirrors failed"

MIN_RADIUS_M = 1000
MAX_RADIUS_M = 80000


class UnknownRegionError(ValueError):
    pass


def region_iso(region: str) -> str:
    code = (region or "").strip().upper()
    iso = REGION_ISO.get(code)
    if not iso:
        raise UnknownRegionError(f"Unsupported region: {region!r}")
    return iso


# -----------------------------
# Query builders
# -----------------------------
def _feature_selectors(sports_regex: str, scope: str, nodes_only: bool, name_filter: str) -> List[str]:
    """
    OR-set of tag selectors, repeated per element type.

    `scope` is appended to each selector: "(area.searchArea)" or "(around:...)".
    `name_filter` is the tag prefix the name-based fallback attaches to.
    """
    clauses = [
        f'["sport"~"{sports_regex}"]',
        f'["leisure"="pitch"]["sport"~"{sports_regex}"]',
        f'["leisure"="sports_centre"]["sport"~"{sports_regex}"]',
        f'["leisure"="recreation_ground"]["sport"~"{sports_regex}"]',
        f'["leisure"="playground"]["sport"~"{sports_regex}"]',
        '["basketball"="yes"]',
        '["playground:basketball"="yes"]',
        f'{name_filter}["name"~"{sports_regex}",i]',
    ]
    kinds = ["node"] if nodes_only else ["node", "way", "relation"]
    return [f"  {kind}{clause}{scope};" for kind in kinds for clause in clauses]


def build_region_query(region: str, *, sports_regex: str = SPORTS_REGEX, nodes_only: bool = True) -> str:
    iso = region_iso(region)
    body = "\n".join(_feature_selectors(sports_regex, "(area.searchArea)", nodes_only, '["leisure"]'))
    return (
        "[out:json][timeout:120];\n"
        f'area["ISO3166-2"="{iso}"]->.searchArea;\n'
        "(\n"
        f"{body}\n"
        ");\n"
        "out tags center;"
    )


def build_region_count_query(region: str, *, sports_regex: str = SPORTS_REGEX, nodes_only: bool = False) -> str:
    iso = region_iso(region)
    body = "\n".join(_feature_selectors(sports_regex, "(area.searchArea)", nodes_only, '["leisure"]'))
    return (
        "[out:json][timeout:90];\n"
        f'area["ISO3166-2"="{iso}"]->.searchArea;\n'
        "(\n"
        f"{body}\n"
        ");\n"
        "out ids;"
    )


def build_population_centers_query(region: str) -> str:
    iso = region_iso(region)
    return (
        "[out:json][timeout:60];\n"
        f'area["ISO3166-2"="{iso}"]->.searchArea;\n'
        '(\n  node["place"~"city|town"](area.searchArea);\n);\n'
        "out tags center;"
    )


def build_around_query(
    lat: float,
    lon: float,
    radius_m: int,
    *,
    sports_regex: str = SPORTS_REGEX,
    nodes_only: bool = False,
) -> str:
    r = max(MIN_RADIUS_M, min(MAX_RADIUS_M, int(radius_m)))
    scope = f"(around:{r},{lat},{lon})"
    body = "\n".join(_feature_selectors(sports_regex, scope, nodes_only, ""))
    return (
        "[out:json][timeout:120];\n"
        "(\n"
        f"{body}\n"
        ");\n"
        "out tags center;"
    )


# -----------------------------
# Element normalization
# -----------------------------
def _element_coords(el: Dict[str, Any]) -> Optional[tuple]:
    lat = el.get("lat")
    lon = el.get("lon")
    if lat is None or lon is None:
        center = el.get("center") or {}
        lat = center.get("lat")
        lon = center.get("lon")
    try:
        return float(lat), float(lon)
    except (TypeError, ValueError):
        return None


def elements_to_candidates(elements: List[Dict[str, Any]]) -> List[CandidateFacility]:
    """Drop elements with no resolvable coordinates (no lat/lon, no center)."""
    out: List[CandidateFacility] = []
    for el in elements or []:
        if not isinstance(el, dict):
            continue
        coords = _element_coords(el)
        if coords is None or el.get("id") is None or not el.get("type"):
            continue
        out.append(
            CandidateFacility(
                provider="osm",
                external_type=str(el["type"]),
                external_id=str(el["id"]),
                tags=dict(el.get("tags") or {}),
                lat=coords[0],
                lon=coords[1],
            )
        )
    return out


def infer_sport_type(tags: Dict[str, Any]) -> str:
    raw = f"{tags.get('sport') or ''} {tags.get('name') or ''}".lower()
    if "basket" in raw:
        return "basketball"
    if "pickle" in raw:
        return "pickleballSingles"
    if "tennis" in raw:
        return "tennisSingles"
    return "basketball"


# -----------------------------
# Client
# -----------------------------
class OverpassClient:
    """Mirror-rotating Overpass client. Every public method is non-raising."""

    def __init__(
        self,
        mirrors: Optional[List[str]] = None,
        *,
        timeout_s: float = 25.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.mirrors = list(mirrors or OVERPASS_MIRRORS)
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _policy(self) -> RetryPolicy:
        return RetryPolicy(
            candidates=self.mirrors,
            attempts_per_candidate=2,
            backoff=linear_jitter_backoff(0.8, 0.5, self._rng),
            sleep=self._sleep,
            rng=self._rng,
        )

    def post(self, query: str) -> Dict[str, Any]:
        """
        POST a query across mirrors.

        Returns {"ok": bool, "elements": [...], "endpoint": str|None, "error": str|None}.
        """

        def _send(endpoint: str) -> requests.Response:
            return self.session.post(endpoint, data={"data": query}, timeout=self.timeout_s)

        outcome = self._policy().run(_send)
        if not outcome.ok:
            logger.warning(
                json.dumps(
                    {
                        "event": "overpass_all_mirrors_failed",
                        "attempts": outcome.attempts,
                        "last_endpoint": outcome.endpoint,
                        "last_status": outcome.status,
                        "last_error": outcome.error,
                    },
                    sort_keys=True,
                )
            )
            return {"ok": False, "elements": [], "endpoint": outcome.endpoint, "error": ALL_MIRRORS_FAILED}

        try:
            payload = outcome.response.json()
        except ValueError as e:
            return {"ok": False, "elements": [], "endpoint": outcome.endpoint, "error": f"Bad Overpass JSON: {e}"}

        elements = payload.get("elements") if isinstance(payload, dict) else None
        return {"ok": True, "elements": list(elements or []), "endpoint": outcome.endpoint, "error": None}

    def fetch_candidates(self, region: str, *, sport_filter: str = SPORTS_REGEX, nodes_only: bool = True) -> FetchResult:
        res = self.post(build_region_query(region, sports_regex=sport_filter, nodes_only=nodes_only))
        if not res["ok"]:
            return FetchResult(ok=False, endpoint=res["endpoint"], error=res["error"])
        return FetchResult(candidates=elements_to_candidates(res["elements"]), endpoint=res["endpoint"])

    def fetch_around(self, lat: float, lon: float, radius_m: int, *, sport_filter: str = SPORTS_REGEX) -> FetchResult:
        res = self.post(build_around_query(lat, lon, radius_m, sports_regex=sport_filter, nodes_only=False))
        if not res["ok"]:
            return FetchResult(ok=False, endpoint=res["endpoint"], error=res["error"])
        return FetchResult(candidates=elements_to_candidates(res["elements"]), endpoint=res["endpoint"])

    def fetch_count(self, region: str, *, sport_filter: str = SPORTS_REGEX) -> Optional[int]:
        """Ids-only count. None when every mirror failed."""
        res = self.post(build_region_count_query(region, sports_regex=sport_filter))
        if not res["ok"]:
            return None
        return len(res["elements"])

    def fetch_population_centers(self, region: str) -> Optional[List[PopulationCenter]]:
        res = self.post(build_population_centers_query(region))
        if not res["ok"]:
            return None
        out: List[PopulationCenter] = []
        for el in res["elements"]:
            tags = el.get("tags") or {}
            name = str(tags.get("name") or "").strip()
            coords = _element_coords(el)
            if not name or coords is None:
                continue
            try:
                pop = int(str(tags.get("population") or "0").replace(",", "").strip() or 0)
            except ValueError:
                pop = 0
            out.append(PopulationCenter(name=name, population=pop, lat=coords[0], lon=coords[1]))
        return out
