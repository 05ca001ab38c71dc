"""FastAPI tracking service.

Accepts beacon events via ``POST /track``, derives pseudonymous identity
and context server-side, persists them to the DuckDB warehouse, stitches
sessions, and serves the analytics read API. A background task expires
old data and ends idle sessions.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import duckdb
from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.analysis.routes import router as analytics_router
from src.collector.dependencies import client_ip, get_app_settings, get_db, get_geo
from src.collector.pipeline import ClientContext, record_event
from src.collector.schemas import TrackResponse
from src.config import Settings, get_settings
from src.context.geo import GeoResolver
from src.errors import StorageError, ValidationError
from src.warehouse.db import get_connection, init_db
from src.warehouse.retention import run_maintenance_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the warehouse and geo database, and start maintenance."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    conn = get_connection(settings.db_path)
    init_db(conn)
    app.state.db = conn
    app.state.settings = settings
    app.state.geo = GeoResolver(settings.geoip_db_path)

    maintenance = None
    if settings.maintenance_interval_seconds > 0:
        maintenance = asyncio.create_task(
            run_maintenance_loop(
                conn,
                settings.maintenance_interval_seconds,
                settings.retention_days,
                settings.session_idle_minutes,
            )
        )
    logger.info("Tracker started (db=%s, retention=%dd)", settings.db_path, settings.retention_days)
    yield

    if maintenance is not None:
        maintenance.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await maintenance
    app.state.geo.close()
    conn.close()


app = FastAPI(
    title="Cookieless Analytics Tracker",
    description="Ingests privacy-preserving beacon events and serves site analytics.",
    version="0.3.0",
    lifespan=lifespan,
)
app.include_router(analytics_router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        field = errors[0]["loc"][-1]
        message = f"Invalid {field}: {errors[0]['msg']}"
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.get("/health")
def health() -> dict:
    return {
        "success": True,
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/track", response_model=TrackResponse, status_code=201)
def track(
    request: Request,
    payload: Any = Body(None),
    conn: duckdb.DuckDBPyConnection = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    geo: GeoResolver = Depends(get_geo),
):
    """Record one beacon event and advance its session."""
    client = ClientContext(
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        host=request.headers.get("host"),
    )
    try:
        record_event(conn, payload, client, settings, geo)
    except StorageError:
        logger.exception("Tracking failed")
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Failed to track event"}
        )
    return TrackResponse()
