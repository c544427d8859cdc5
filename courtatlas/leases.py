"""
Short-TTL exclusive-execution leases (table: job_leases).

Same shape as the per-recipient send locks: a row per resource with an owner
and an expiry. Acquire is a single guarded UPDATE (only when the current lease
is missing or expired), so the check and the write cannot interleave with a
competing acquirer. Release is best-effort; a lost release just means the
lease expires on its own.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import as_utc, get_engine, insert_ignore, utcnow
from .models import LeaseResult
from .schema import JobLease

logger = logging.getLogger(__name__)

IMPORT_MAIN_LEASE = "osm_import.main"
IMPORT_CITY_LEASE = "osm_import.city"


class LeaseManager:
    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def try_acquire(self, resource: str, owner: str, ttl_s: float, *, now: Optional[datetime] = None) -> LeaseResult:
        """Fails closed: a store error reports acquired=False."""
        now = now or utcnow()
        table = JobLease.__table__
        try:
            with self.engine.begin() as conn:
                insert_ignore(conn, table, {"resource": resource, "owner": None, "expires_at": None}, ["resource"])
                res = conn.execute(
                    update(table)
                    .where(
                        table.c.resource == resource,
                        or_(table.c.expires_at.is_(None), table.c.expires_at <= now),
                    )
                    .values(owner=owner, expires_at=now + timedelta(seconds=ttl_s), acquired_at=now)
                )
                if res.rowcount == 1:
                    return LeaseResult(acquired=True, held_until=now + timedelta(seconds=ttl_s), held_by=owner)
                row = conn.execute(
                    select(table.c.owner, table.c.expires_at).where(table.c.resource == resource)
                ).first()
        except SQLAlchemyError as e:
            logger.warning("lease acquire failed for %s (failing closed): %s", resource, e)
            return LeaseResult(acquired=False)

        held_by, held_until = (row[0], as_utc(row[1])) if row else (None, None)
        logger.info(
            json.dumps(
                {
                    "event": "lease_busy",
                    "resource": resource,
                    "held_by": held_by,
                    "held_until": held_until.isoformat() if held_until else None,
                },
                sort_keys=True,
            )
        )
        return LeaseResult(acquired=False, held_until=held_until, held_by=held_by)

    def release(self, resource: str, owner: Optional[str] = None, *, now: Optional[datetime] = None) -> None:
        """Expire the lease (only if `owner` still holds it, when given). Never raises."""
        now = now or utcnow()
        table = JobLease.__table__
        stmt = update(table).where(table.c.resource == resource)
        if owner is not None:
            stmt = stmt.where(table.c.owner == owner)
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt.values(expires_at=now - timedelta(seconds=1)))
        except SQLAlchemyError as e:
            logger.warning("lease release failed for %s: %s", resource, e)

    @contextmanager
    def held(self, resource: str, owner: str, ttl_s: float, *, now: Optional[datetime] = None) -> Iterator[LeaseResult]:
        """
        Yield the acquire result; release on exit only if we got it.

            with leases.held(IMPORT_MAIN_LEASE, owner, 360) as lease:
                if not lease.acquired:
                    return skipped
        """
        result = self.try_acquire(resource, owner, ttl_s, now=now)
        try:
            yield result
        finally:
            if result.acquired:
                self.release(resource, owner, now=now)
