"""
Monthly spend governor for the commercial places provider.

- ledger row per (YYYY-MM UTC, provider): calls_made, cost_cents
- remaining = floor((cap - spent) / cost_per_call), never negative
- charge is one conditional statement (upsert + in-place increment) inside a
  transaction, so overlapping invocations cannot lose an increment
- the kill switch (RuntimeConfig.google_fallback_enabled) is checked separately
  from the numeric cap; either one alone blocks commercial calls
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import GOOGLE_CENTS_PER_CALL, GOOGLE_PROVIDER, RuntimeConfig
from .db import get_engine, insert_ignore, utcnow
from .schema import BillingLedgerEntry

logger = logging.getLogger(__name__)


def month_key(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).strftime("%Y-%m")


class CostGovernor:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        config: RuntimeConfig,
        cost_per_call_cents: int = GOOGLE_CENTS_PER_CALL,
    ):
        self._engine = engine
        self._config = config
        self.cost_per_call_cents = max(1, int(cost_per_call_cents))

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def cap_cents(self) -> int:
        return self._config.google_budget_cap_cents()

    def spent_cents(self, provider: str = GOOGLE_PROVIDER, *, now: Optional[datetime] = None) -> int:
        with self.engine.begin() as conn:
            v = conn.execute(
                select(BillingLedgerEntry.cost_cents).where(
                    BillingLedgerEntry.month == month_key(now),
                    BillingLedgerEntry.provider == provider,
                )
            ).scalar()
        return int(v or 0)

    def remaining_calls(self, provider: str = GOOGLE_PROVIDER, *, now: Optional[datetime] = None) -> int:
        """Store failure reads as zero budget; a flaky ledger must not unlock paid calls."""
        try:
            spent = self.spent_cents(provider, now=now)
        except SQLAlchemyError as e:
            logger.warning("billing ledger read failed, treating budget as exhausted: %s", e)
            return 0
        return max(0, (self.cap_cents() - spent) // self.cost_per_call_cents)

    def charge_calls(self, provider: str = GOOGLE_PROVIDER, n: int = 1, *, now: Optional[datetime] = None) -> None:
        n = int(n)
        if n <= 0:
            return
        now = now or utcnow()
        month = month_key(now)
        table = BillingLedgerEntry.__table__
        with self.engine.begin() as conn:
            insert_ignore(
                conn,
                table,
                {"month": month, "provider": provider, "calls_made": 0, "cost_cents": 0, "updated_at": now},
                ["month", "provider"],
            )
            conn.execute(
                update(table)
                .where(table.c.month == month, table.c.provider == provider)
                .values(
                    calls_made=table.c.calls_made + n,
                    cost_cents=table.c.cost_cents + n * self.cost_per_call_cents,
                    updated_at=now,
                )
            )

    def commercial_allowed(self, provider: str = GOOGLE_PROVIDER, *, now: Optional[datetime] = None) -> int:
        """
        Calls the caller may spend right now (0 = skip the commercial provider).

        Logs the skip reason; a skip is a normal outcome, not an error.
        """
        if not self._config.google_fallback_enabled():
            logger.info(json.dumps({"event": "commercial_skipped", "provider": provider, "reason": "kill_switch"}, sort_keys=True))
            return 0
        remaining = self.remaining_calls(provider, now=now)
        if remaining <= 0:
            logger.info(json.dumps({"event": "commercial_skipped", "provider": provider, "reason": "budget_exhausted"}, sort_keys=True))
        return remaining
