"""
courtatlas.db

Single source of truth for database connectivity.

Contracts this module provides (used across the repo):
- get_engine(): shared SQLAlchemy Engine, created lazily from DATABASE_URL
- set_engine(): inject an engine (tests, one-off scripts against another DB)
- get_session(): context-managed Session (commit on success, rollback on error)
- init_db(): create all tables declared in courtatlas.schema
- insert_ignore(): dialect-aware INSERT ... ON CONFLICT DO NOTHING

Notes:
- DATABASE_URL is expected via environment (e.g. /etc/courtatlas/secret.env).
- We normalize common scheme/driver variants to reduce footguns.
- All timestamps are UTC. SQLite hands back naive datetimes; use as_utc() on reads.
"""

from __future__ import annotations

import os
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Sequence

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session, sessionmaker

_engine: Optional[Engine] = None
_session_factories: "weakref.WeakKeyDictionary[Engine, sessionmaker]" = weakref.WeakKeyDictionary()


def _normalize_database_url(raw: str) -> str:
    """
    Normalize DATABASE_URL variants to something SQLAlchemy can reliably use.

    We run on psycopg (v3), so:
    - postgres://            -> postgresql+psycopg://
    - postgresql://          -> postgresql+psycopg://
    - postgresql+psycopg2:// -> postgresql+psycopg://
    """
    url = (raw or "").strip()

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]

    if url.startswith("postgresql+psycopg2://"):
        url = "postgresql+psycopg://" + url[len("postgresql+psycopg2://") :]

    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]

    return url


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine, creating it on first use."""
    global _engine
    if _engine is None:
        raw = os.environ.get("DATABASE_URL", "")
        if not raw:
            # Keep this loud and explicit: flows call this at run time, not import time.
            raise RuntimeError(
                "DATABASE_URL is not set in environment. "
                "Load /etc/courtatlas/secret.env (or equivalent) before running flows."
            )
        _engine = create_engine(_normalize_database_url(raw), future=True, pool_pre_ping=True)
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    global _engine
    _engine = engine


def _session_factory(engine: Engine) -> sessionmaker:
    factory = _session_factories.get(engine)
    if factory is None:
        # expire_on_commit=False: callers read row attributes after the block exits.
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
        _session_factories[engine] = factory
    return factory


@contextmanager
def get_session(engine: Optional[Engine] = None) -> Iterator[Session]:
    """
    Context-managed DB session.

    Usage:
        from courtatlas.db import get_session
        with get_session() as s:
            ...
    """
    session: Session = _session_factory(engine or get_engine())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Create any missing tables. Idempotent."""
    from .schema import Base

    Base.metadata.create_all(engine or get_engine())


def insert_ignore(conn: Connection, table: Any, values: Dict[str, Any], index_elements: Sequence[str]) -> int:
    """
    INSERT a row unless one with the same key already exists.

    Returns the number of rows inserted (0 or 1).
    """
    dialect = conn.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
    else:
        raise NotImplementedError(f"insert_ignore not supported for dialect {dialect!r}")
    return int(conn.execute(stmt).rowcount or 0)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None
