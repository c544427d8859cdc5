from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional


@dataclass
class CandidateFacility:
    """
    Provider-sourced facility candidate. Transient: produced by a provider
    response, consumed by dedup, discarded after write or skip.
    """
    provider: str              # e.g. 'osm'
    external_type: str         # node / way / relation
    external_id: str
    tags: Dict[str, Any]
    lat: float
    lon: float                 # centroid for ways / relations

    @property
    def record_id(self) -> str:
        return f"{self.provider}:{self.external_type}:{self.external_id}"

    @property
    def source_ref(self) -> str:
        return f"{self.external_type}/{self.external_id}"


@dataclass(frozen=True)
class AltSource:
    type: str
    ref: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "ref": self.ref}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["AltSource"]:
        if not isinstance(raw, dict):
            return None
        t = str(raw.get("type") or "").strip()
        r = str(raw.get("ref") or "").strip()
        if not t or not r:
            return None
        return cls(type=t, ref=r)


class Provenance:
    """
    Append-only provenance list. Identity is (type, ref); merging is a union
    that keeps first-seen order. Entries are never removed.
    """

    def __init__(self, sources: Iterable[AltSource] = ()):
        self._items: List[AltSource] = []
        for s in sources:
            self.add(s)

    @classmethod
    def from_list(cls, raw: Optional[Iterable[Any]]) -> "Provenance":
        parsed = (AltSource.from_dict(r) for r in (raw or []))
        return cls(s for s in parsed if s is not None)

    def add(self, source: AltSource) -> bool:
        if source in self._items:
            return False
        self._items.append(source)
        return True

    def merge(self, other: Iterable[AltSource]) -> int:
        return sum(1 for s in other if self.add(s))

    def to_list(self) -> List[Dict[str, str]]:
        return [s.to_dict() for s in self._items]

    def __iter__(self) -> Iterator[AltSource]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._items


@dataclass
class StandardPlace:
    """Provider-neutral place shape returned by the geo gateway."""
    id: str
    display_name: str
    formatted_address: str
    lat: float
    lon: float
    provider: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "formattedAddress": self.formatted_address,
            "location": {"latitude": self.lat, "longitude": self.lon},
            "provider": self.provider,
        }


@dataclass
class ReverseResult:
    address: str = ""
    city: str = ""
    state: str = ""

    def is_empty(self) -> bool:
        return not (self.address or self.city or self.state)

    def to_dict(self) -> Dict[str, str]:
        return {"address": self.address, "city": self.city, "state": self.state}


@dataclass
class PopulationCenter:
    name: str
    population: int
    lat: float
    lon: float


@dataclass
class FetchResult:
    """Overpass fetch outcome. ok=False means every mirror failed."""
    candidates: List[CandidateFacility] = field(default_factory=list)
    ok: bool = True
    endpoint: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ImportResult:
    region: str
    created: int = 0
    skipped_existing: int = 0
    merged: int = 0
    more: bool = False
    endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "created": self.created,
            "skipped_existing": self.skipped_existing,
            "merged": self.merged,
            "more": self.more,
            "endpoint": self.endpoint,
        }


@dataclass
class LeaseResult:
    acquired: bool
    held_until: Optional[datetime] = None
    held_by: Optional[str] = None
