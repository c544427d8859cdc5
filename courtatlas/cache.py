"""
Content-addressed geo response cache (table: geo_cache).

- key = "<kind>:" + sha256(canonical JSON of the normalized request)
- per-kind TTL; expiry is checked lazily on read and swept in batch by a flow
- provider-agnostic: a cached payload is returned as-is whoever produced it

Store errors never escape get/set: a broken cache degrades to a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import as_utc, get_engine, get_session, utcnow
from .schema import GeoCacheEntry

logger = logging.getLogger(__name__)


def cache_key(kind: str, params: Mapping[str, Any]) -> str:
    canon = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return f"{kind}:{hashlib.sha256(canon.encode('utf-8')).hexdigest()}"


@dataclass
class CacheResult:
    value: Any
    hit: bool


class GeoCache:
    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def lookup(self, key: str, *, now: Optional[datetime] = None) -> CacheResult:
        now = now or utcnow()
        try:
            with get_session(self.engine) as s:
                row = s.get(GeoCacheEntry, key)
                if row is None:
                    return CacheResult(None, False)
                expires_at = as_utc(row.expires_at)
                if expires_at is None or now > expires_at:
                    return CacheResult(None, False)
                return CacheResult(row.payload, True)
        except SQLAlchemyError as e:
            logger.warning("geo_cache read failed for %s: %s", key, e)
            return CacheResult(None, False)

    def get(self, key: str, *, now: Optional[datetime] = None) -> Optional[Any]:
        return self.lookup(key, now=now).value

    def set(self, key: str, payload: Any, ttl_days: float, *, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        try:
            with get_session(self.engine) as s:
                row = s.get(GeoCacheEntry, key)
                if row is None:
                    row = GeoCacheEntry(key=key)
                    s.add(row)
                row.payload = payload
                row.created_at = now
                row.expires_at = now + timedelta(days=ttl_days)
        except SQLAlchemyError as e:
            logger.warning("geo_cache write failed for %s: %s", key, e)

    def prune_expired(self, *, now: Optional[datetime] = None, batch_size: int = 500) -> int:
        """Delete entries with expires_at < now in id batches. Returns rows deleted."""
        now = now or utcnow()
        deleted = 0
        while True:
            with get_session(self.engine) as s:
                keys = s.execute(
                    select(GeoCacheEntry.key).where(GeoCacheEntry.expires_at < now).limit(batch_size)
                ).scalars().all()
                if not keys:
                    break
                s.execute(delete(GeoCacheEntry).where(GeoCacheEntry.key.in_(keys)))
            deleted += len(keys)
            if len(keys) < batch_size:
                break
        logger.info(json.dumps({"event": "geo_cache_pruned", "deleted": deleted}, sort_keys=True))
        return deleted
