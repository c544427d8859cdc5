"""
Configuration for CourtAtlas.

Two layers:
- Settings: process-level knobs read from the environment (/etc/courtatlas/secret.env
  or a local .env via python-dotenv). Timeouts, limits, API keys.
- RuntimeConfig: operator-editable flags stored in the `app_config` k/v table
  (owner uid, Google kill switch, budget cap, auto-import toggles, repair control).
  Reads are memoized for a few minutes so hot paths do not hit the DB per call.

NOTE:
Region order and the sport regex are code constants, not env; changing them
changes what the import rotation means.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import get_engine, get_session, utcnow
from .schema import AppConfig

logger = logging.getLogger(__name__)

load_dotenv()


# -----------------------------
# Env helpers
# -----------------------------
def _env_int(name: str, default: int) -> int:
    try:
        v = int(os.environ.get(name, str(default)) or str(default))
        return v
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        v = float(os.environ.get(name, str(default)) or str(default))
        return v
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def clamp_int(value: Any, lo: int, hi: int, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


# -----------------------------
# Static catalog
# -----------------------------
# West-to-east so a fresh cycle sweeps the country in a predictable band.
REGION_ORDER: List[str] = [
    "CA", "OR", "WA", "NV", "AZ", "ID", "UT", "NM", "CO", "MT", "WY", "ND", "SD", "NE", "KS",
    "OK", "TX", "MN", "IA", "MO", "AR", "LA", "WI", "IL", "MS", "MI", "IN", "KY", "TN", "AL",
    "GA", "FL", "OH", "WV", "VA", "NC", "SC", "PA", "NY", "MD", "DE", "NJ", "CT", "RI", "MA",
    "VT", "NH", "ME", "DC",
]

# AK / HI are resolvable for manual imports but stay out of the rotation.
REGION_ISO: Dict[str, str] = {code: f"US-{code}" for code in REGION_ORDER + ["AK", "HI"]}

SPORTS_REGEX = "basketball|tennis|pickleball"

OVERPASS_MIRRORS: List[str] = [
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass-api.de/api/interpreter",
    "https://z.overpass-api.de/api/interpreter",
    "https://lz4.overpass-api.de/api/interpreter",
    "https://overpass.osm.ch/api/interpreter",
]

USER_AGENT = "CourtAtlas-Importer/1.0 (contact: ops@courtatlas.app)"

OSM_ATTRIBUTION = "© OpenStreetMap contributors"
OSM_LICENSE = "ODbL"

TEXT_TTL_DAYS = 14
REVERSE_TTL_DAYS = 30
MIN_QUERY_LENGTH = 3

GOOGLE_PROVIDER = "google"
GOOGLE_CENTS_PER_CALL = 2
DEFAULT_GOOGLE_BUDGET_CENTS = 10000

MAX_CREATES_CEILING = 4000


@dataclass
class Settings:
    """Process-level settings. Built once per process via load_settings()."""

    geoapify_api_key: str = ""
    google_api_key: str = ""

    overpass_timeout_s: float = 25.0
    provider_timeout_s: float = 12.0

    import_max_creates: int = 1500
    manual_max_creates: int = 2000
    import_lease_ttl_s: int = 360
    backlog_lease_ttl_s: int = 720

    coverage_threshold: float = 0.7
    audit_top_cities: int = 20
    lagging_top_n: int = 5
    backlog_max_creates: int = 2000

    dedupe_window: int = 1500
    dedupe_max_fixes: int = 100
    queue_stale_minutes: int = 60
    repair_time_budget_s: float = 480.0

    # Import dedup tolerance and reverse-geocode cache-hit tolerance are
    # independent knobs even though both default to ~1 m.
    import_cell_decimals: int = 5
    reverse_cache_decimals: int = 5

    run_secret: str = ""
    alerts_webhook_url: str = ""
    owner_uid_fallback: str = ""
    config_cache_ttl_s: float = 300.0


def load_settings() -> Settings:
    return Settings(
        geoapify_api_key=_env_str("GEOAPIFY_API_KEY"),
        google_api_key=_env_str("GOOGLE_MAPS_API_KEY") or _env_str("GOOGLE_API_KEY"),
        overpass_timeout_s=_env_float("OVERPASS_TIMEOUT_S", 25.0),
        provider_timeout_s=_env_float("PROVIDER_TIMEOUT_S", 12.0),
        import_max_creates=clamp_int(_env_int("IMPORT_MAX_CREATES", 1500), 1, MAX_CREATES_CEILING, 1500),
        manual_max_creates=clamp_int(_env_int("IMPORT_MANUAL_MAX_CREATES", 2000), 1, MAX_CREATES_CEILING, 2000),
        import_lease_ttl_s=_env_int("IMPORT_LEASE_TTL_S", 360),
        backlog_lease_ttl_s=_env_int("BACKLOG_LEASE_TTL_S", 720),
        coverage_threshold=_env_float("COVERAGE_THRESHOLD", 0.7),
        audit_top_cities=_env_int("AUDIT_TOP_CITIES", 20),
        lagging_top_n=_env_int("LAGGING_REGIONS_TOP_N", 5),
        backlog_max_creates=clamp_int(_env_int("BACKLOG_MAX_CREATES", 2000), 1, MAX_CREATES_CEILING, 2000),
        dedupe_window=_env_int("DEDUPE_WINDOW", 1500),
        dedupe_max_fixes=_env_int("DEDUPE_MAX_FIXES", 100),
        queue_stale_minutes=_env_int("QUEUE_STALE_MINUTES", 60),
        repair_time_budget_s=_env_float("REPAIR_TIME_BUDGET_S", 480.0),
        import_cell_decimals=clamp_int(_env_int("IMPORT_CELL_DECIMALS", 5), 0, 7, 5),
        reverse_cache_decimals=clamp_int(_env_int("REVERSE_CACHE_DECIMALS", 5), 0, 7, 5),
        run_secret=_env_str("RUN_SECRET"),
        alerts_webhook_url=_env_str("OPERATOR_ALERTS_WEBHOOK_URL"),
        owner_uid_fallback=_env_str("OWNER_UID_FALLBACK"),
        config_cache_ttl_s=_env_float("CONFIG_CACHE_TTL_S", 300.0),
    )


# -----------------------------
# Memoized accessors
# -----------------------------
class TTLMemo:
    """
    Memoize a zero-arg loader for `ttl_s` seconds.

    The clock is injectable so tests can step time instead of sleeping.
    """

    _UNSET = object()

    def __init__(self, loader: Callable[[], Any], ttl_s: float, clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self._ttl_s = float(ttl_s)
        self._clock = clock
        self._value: Any = self._UNSET
        self._loaded_at = 0.0

    def get(self) -> Any:
        now = self._clock()
        if self._value is self._UNSET or (now - self._loaded_at) >= self._ttl_s:
            self._value = self._loader()
            self._loaded_at = now
        return self._value

    def invalidate(self) -> None:
        self._value = self._UNSET


# app_config keys
OWNER_UID_K = "owner_uid"
GOOGLE_FALLBACK_ENABLED_K = "google_fallback_enabled"
GOOGLE_BUDGET_CAP_K = "google_budget_cap_cents"
AUTO_IMPORT_ENABLED_K = "auto_import_enabled"
AUTO_IMPORT_PHASED_K = "auto_import_phased"
AUTO_IMPORT_MAX_CREATES_K = "auto_import_max_creates"
REPAIR_ENABLED_K = "repair.enabled"
REPAIR_SETTINGS_K = "repair.settings"
REPAIR_CURSOR_K = "repair.cursor"


def _truthy(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


class RuntimeConfig:
    """
    Operator-editable flags backed by `app_config`, memoized in-process.

    A failed read is memoized as an empty snapshot, so every flag falls back to
    its conservative default (Google off) until the memo expires.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        settings: Optional[Settings] = None,
        ttl_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._engine = engine
        self._settings = settings or Settings()
        self._memo = TTLMemo(
            self._load_all,
            self._settings.config_cache_ttl_s if ttl_s is None else ttl_s,
            clock,
        )

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def _load_all(self) -> Dict[str, Any]:
        try:
            with get_session(self.engine) as s:
                rows = s.execute(select(AppConfig.key, AppConfig.value)).all()
            return {k: v for k, v in rows}
        except SQLAlchemyError as e:
            logger.warning("app_config read failed, using defaults: %s", e)
            return {}

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._memo.get())

    def get(self, key: str, default: Any = None) -> Any:
        v = self._memo.get().get(key)
        return default if v is None else v

    def set(self, key: str, value: Any) -> None:
        """Write-through; invalidates the memo so the next read sees it."""
        with get_session(self.engine) as s:
            row = s.get(AppConfig, key)
            if row is None:
                s.add(AppConfig(key=key, value=value, updated_at=utcnow()))
            else:
                row.value = value
                row.updated_at = utcnow()
        self._memo.invalidate()

    def invalidate(self) -> None:
        self._memo.invalidate()

    # --- typed accessors ---
    def owner_uid(self) -> Optional[str]:
        uid = str(self.get(OWNER_UID_K) or "").strip()
        return uid or (self._settings.owner_uid_fallback or None)

    def google_fallback_enabled(self) -> bool:
        return _truthy(self.get(GOOGLE_FALLBACK_ENABLED_K), False)

    def google_budget_cap_cents(self) -> int:
        try:
            return max(0, int(self.get(GOOGLE_BUDGET_CAP_K, DEFAULT_GOOGLE_BUDGET_CENTS)))
        except (TypeError, ValueError):
            return DEFAULT_GOOGLE_BUDGET_CENTS

    def auto_import_enabled(self) -> bool:
        return _truthy(self.get(AUTO_IMPORT_ENABLED_K), True)

    def auto_import_phased(self) -> bool:
        return _truthy(self.get(AUTO_IMPORT_PHASED_K), True)

    def auto_import_max_creates(self) -> int:
        return clamp_int(
            self.get(AUTO_IMPORT_MAX_CREATES_K, self._settings.import_max_creates),
            1,
            MAX_CREATES_CEILING,
            self._settings.import_max_creates,
        )

    def repair_enabled(self) -> bool:
        return _truthy(self.get(REPAIR_ENABLED_K), False)
