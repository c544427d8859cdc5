"""
FastAPI surface: geo read path for any signed-in caller, admin calls for the owner.

Serve with: uvicorn courtatlas.api:app
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from . import __version__
from .auth import PermissionDenied, Unauthenticated, check_run_secret, claim_owner, require_caller, require_owner
from .config import REGION_ORDER, REPAIR_SETTINGS_K, clamp_int, MAX_CREATES_CEILING
from .coverage import consume_backlog_task
from .db import init_db
from .importer import ImportFetchError, run_import_tick, run_region_import
from .providers.overpass import UnknownRegionError
from .repair import RepairSettings, run_repair_once
from .services import Services, build_services

logger = logging.getLogger(__name__)


# -----------------------------
# Request bodies (loose: the geo path must never 422 on odd input)
# -----------------------------
class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TextSearchRequest(_Loose):
    text: Any = None
    bias: Any = None


class TextSearchV2Request(_Loose):
    text: Any = None
    bias: Any = None
    pageAll: Any = False
    maxPages: Any = 3
    pageSize: Any = 20


class ReverseGeocodeRequest(_Loose):
    lat: Any = None
    lng: Any = None


class PlaceDetailsRequest(_Loose):
    placeId: Any = None


class ClaimOwnerRequest(_Loose):
    newOwnerUid: Optional[str] = None


class RegionImportRequest(_Loose):
    region: Any = None
    maxCreates: Any = None
    nodesOnly: Any = False


class RepairRunRequest(_Loose):
    mode: Any = None
    capPerRun: Any = None
    clusterDecimals: Any = None
    parseAddressOnly: Any = None
    pageSize: Any = None


# -----------------------------
# Dependencies
# -----------------------------
def get_services(request: Request) -> Services:
    return request.app.state.services


def caller_uid(x_caller_uid: Optional[str] = Header(default=None)) -> str:
    return require_caller(x_caller_uid)


def owner_uid(
    x_caller_uid: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> str:
    return require_owner(x_caller_uid, services.config)


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


_REPAIR_FIELDS = {
    "mode": "mode",
    "capPerRun": "cap_per_run",
    "clusterDecimals": "cluster_decimals",
    "parseAddressOnly": "parse_address_only",
    "pageSize": "page_size",
}


def _repair_overrides(model: Optional[RepairRunRequest]) -> Dict[str, Any]:
    """Request fields as snake_case settings keys; unset fields are omitted."""
    if model is None:
        return {}
    raw = model.model_dump()
    return {snake: raw[camel] for camel, snake in _REPAIR_FIELDS.items() if raw.get(camel) is not None}


def _stored_repair_settings(services: Services) -> Dict[str, Any]:
    stored = services.config.get(REPAIR_SETTINGS_K) or {}
    if not isinstance(stored, dict):
        return {}
    out = dict(stored)
    for camel, snake in _REPAIR_FIELDS.items():
        if camel in out:
            out.setdefault(snake, out.pop(camel))
    return out


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services (and ensure tables) on startup unless injected."""
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
            init_db(app.state.services.engine)
        yield

    app = FastAPI(
        title="CourtAtlas API",
        description="Sports facility geodata: search, reverse geocode and import operations",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(Unauthenticated)
    async def _unauthenticated(request: Request, exc: Unauthenticated):
        return JSONResponse(status_code=401, content={"detail": str(exc) or "unauthenticated"})

    @app.exception_handler(PermissionDenied)
    async def _denied(request: Request, exc: PermissionDenied):
        return JSONResponse(status_code=403, content={"detail": str(exc) or "permission denied"})

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "courtatlas", "version": __version__}

    # -----------------------------
    # Geo read path
    # -----------------------------
    @app.post("/geo/text-search")
    def text_search(
        body: Optional[TextSearchRequest] = None,
        uid: str = Depends(caller_uid),
        services: Services = Depends(get_services),
    ):
        b = body or TextSearchRequest()
        return services.gateway.text_search(b.text, b.bias)

    @app.post("/geo/text-search/v2")
    def text_search_v2(
        body: Optional[TextSearchV2Request] = None,
        uid: str = Depends(caller_uid),
        services: Services = Depends(get_services),
    ):
        b = body or TextSearchV2Request()
        return services.gateway.text_search_paged(
            b.text, b.bias, page_all=_bool(b.pageAll), max_pages=b.maxPages, page_size=b.pageSize,
        )

    @app.post("/geo/reverse-geocode")
    def reverse_geocode(
        body: Optional[ReverseGeocodeRequest] = None,
        uid: str = Depends(caller_uid),
        services: Services = Depends(get_services),
    ):
        b = body or ReverseGeocodeRequest()
        return services.gateway.reverse_geocode(b.lat, b.lng)

    @app.post("/geo/place-details")
    def place_details(
        body: Optional[PlaceDetailsRequest] = None,
        uid: str = Depends(caller_uid),
        services: Services = Depends(get_services),
    ):
        b = body or PlaceDetailsRequest()
        return services.gateway.place_details(b.placeId)

    # -----------------------------
    # Owner-only admin
    # -----------------------------
    @app.post("/admin/owner/claim")
    def admin_claim_owner(
        body: Optional[ClaimOwnerRequest] = None,
        x_caller_uid: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ):
        owner = claim_owner(x_caller_uid, services.config, (body.newOwnerUid if body else None))
        return {"ok": True, "ownerUid": owner}

    @app.get("/admin/import/order")
    def admin_import_order(uid: str = Depends(owner_uid)):
        return {"order": list(REGION_ORDER), "count": len(REGION_ORDER)}

    @app.post("/admin/import/region")
    def admin_import_region(
        body: Optional[RegionImportRequest] = None,
        uid: str = Depends(owner_uid),
        services: Services = Depends(get_services),
    ):
        b = body or RegionImportRequest()
        st = services.settings
        try:
            result = run_region_import(
                services.engine,
                services.overpass,
                region=str(b.region or ""),
                max_creates=clamp_int(b.maxCreates, 1, MAX_CREATES_CEILING, st.manual_max_creates),
                nodes_only=_bool(b.nodesOnly),
                owner_uid=services.config.owner_uid(),
                decimals=st.import_cell_decimals,
            )
        except UnknownRegionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ImportFetchError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"ok": True, **result.to_dict()}

    @app.post("/admin/import/tick")
    def admin_import_tick(uid: str = Depends(owner_uid), services: Services = Depends(get_services)):
        return run_import_tick(
            services.engine, services.overpass, services.config, services.settings,
            owner=f"manual:{uuid.uuid4().hex[:12]}", leases=services.leases,
        )

    @app.post("/admin/backlog/run")
    def admin_backlog_run(uid: str = Depends(owner_uid), services: Services = Depends(get_services)):
        return consume_backlog_task(
            services.engine, services.overpass, services.config, services.settings,
            owner=f"manual:{uuid.uuid4().hex[:12]}", leases=services.leases,
        )

    @app.post("/admin/repair/run")
    def admin_repair_run(
        body: Optional[RepairRunRequest] = None,
        uid: str = Depends(owner_uid),
        services: Services = Depends(get_services),
    ):
        merged = {**_stored_repair_settings(services), **_repair_overrides(body)}
        settings = RepairSettings.from_mapping(merged)
        logger.info(json.dumps({"event": "repair_run_manual", "by": uid, "mode": settings.mode}, sort_keys=True))
        return run_repair_once(
            services.engine, services.repair_geocoder(), services.config, settings,
            time_budget_s=services.settings.repair_time_budget_s,
        )

    @app.post("/admin/repair/run-headless")
    def admin_repair_headless(
        x_run_secret: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ):
        if not check_run_secret(x_run_secret, services.settings.run_secret):
            raise HTTPException(status_code=403, detail="bad run secret")
        settings = RepairSettings.from_mapping(_stored_repair_settings(services))
        return run_repair_once(
            services.engine, services.repair_geocoder(), services.config, settings,
            time_budget_s=services.settings.repair_time_budget_s,
        )

    return app


app = create_app()
