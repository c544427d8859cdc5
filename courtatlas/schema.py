from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .db import utcnow

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
TS = DateTime(timezone=True)


class Base(DeclarativeBase):
    pass


class Facility(Base):
    """A court / park record. Imported rows use id `osm:{type}:{id}`."""

    __tablename__ = "facilities"
    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    address: Mapped[str] = mapped_column(String(500), default="")
    city: Mapped[str] = mapped_column(String(200), default="")
    state: Mapped[str] = mapped_column(String(100), default="", index=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    courts: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, default=list)

    source: Mapped[str] = mapped_column(String(50), default="user", index=True)
    source_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    source_attribution: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    license: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    alt_sources: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, default=list)

    approved: Mapped[bool] = mapped_column(Boolean, default=False)
    review_status: Mapped[str] = mapped_column(String(50), default="pending")
    dup_of: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TS, default=utcnow, server_default=func.now(), index=True)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow, onupdate=utcnow, server_default=func.now())


class LocationIndexEntry(Base):
    __tablename__ = "facility_loc_index"
    cell_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    primary_id: Mapped[str] = mapped_column(String(200))
    lat: Mapped[float] = mapped_column(Float)
    lon: Mapped[float] = mapped_column(Float)
    region: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow)


class ImportStatus(Base):
    """Singleton (id='osm') rotation pointer + last-run forensics."""

    __tablename__ = "import_status"
    id: Mapped[str] = mapped_column(String(20), primary_key=True)
    current_region_index: Mapped[int] = mapped_column(Integer, default=0)
    phase: Mapped[int] = mapped_column(Integer, default=1)
    cycle_count: Mapped[int] = mapped_column(Integer, default=0)
    total_created: Mapped[int] = mapped_column(Integer, default=0)

    last_region: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    last_created: Mapped[int] = mapped_column(Integer, default=0)
    last_skipped_existing: Mapped[int] = mapped_column(Integer, default=0)
    last_more: Mapped[bool] = mapped_column(Boolean, default=False)
    last_nodes_only: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    last_endpoint: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    last_run_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ImportRun(Base):
    __tablename__ = "import_runs"
    run_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), default="tick")
    region: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    ok: Mapped[bool] = mapped_column(Boolean, default=True)
    created: Mapped[int] = mapped_column(Integer, default=0)
    skipped_existing: Mapped[int] = mapped_column(Integer, default=0)
    more: Mapped[bool] = mapped_column(Boolean, default=False)
    nodes_only: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    max_creates: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phase: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cycle_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    endpoint: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ts: Mapped[datetime] = mapped_column(TS, default=utcnow, index=True)


class CoverageStat(Base):
    __tablename__ = "coverage_stats"
    region: Mapped[str] = mapped_column(String(10), primary_key=True)
    our_count: Mapped[int] = mapped_column(Integer, default=0)
    provider_count: Mapped[int] = mapped_column(Integer, default=0)
    coverage: Mapped[float] = mapped_column(Float, default=0.0)
    queued_tasks: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow)


class BacklogTask(Base):
    __tablename__ = "backlog_tasks"
    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    region: Mapped[str] = mapped_column(String(10), index=True)
    center_name: Mapped[str] = mapped_column(String(200), default="")
    population: Mapped[int] = mapped_column(Integer, default=0)
    lat: Mapped[float] = mapped_column(Float)
    lon: Mapped[float] = mapped_column(Float)
    radius_km: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TS, default=utcnow, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)


class BackfillQueueEntry(Base):
    """Regions currently below the coverage threshold (reconciled every audit)."""

    __tablename__ = "backfill_queue"
    region: Mapped[str] = mapped_column(String(10), primary_key=True)
    coverage: Mapped[float] = mapped_column(Float, default=0.0)
    queued_at: Mapped[datetime] = mapped_column(TS, default=utcnow)


class RegionStats(Base):
    __tablename__ = "region_stats"
    region: Mapped[str] = mapped_column(String(10), primary_key=True)
    total: Mapped[int] = mapped_column(Integer, default=0)
    sports: Mapped[Dict[str, int]] = mapped_column(JSONType, default=dict)
    top_cities: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, default=list)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow)


class Diagnostic(Base):
    """k/v JSON documents for operator visibility (lagging regions, repair status)."""

    __tablename__ = "diagnostics"
    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow)


class GeoCacheEntry(Base):
    __tablename__ = "geo_cache"
    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(TS, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True, index=True)


class BillingLedgerEntry(Base):
    __tablename__ = "billing_ledger"
    month: Mapped[str] = mapped_column(String(7), primary_key=True)
    provider: Mapped[str] = mapped_column(String(30), primary_key=True)
    calls_made: Mapped[int] = mapped_column(Integer, default=0)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow)


class JobLease(Base):
    __tablename__ = "job_leases"
    resource: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)
    acquired_at: Mapped[Optional[datetime]] = mapped_column(TS, nullable=True)


class AppConfig(Base):
    __tablename__ = "app_config"
    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(TS, default=utcnow)
