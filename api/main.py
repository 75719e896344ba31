"""
api/main.py -- FastAPI application entry point for the Desktop MDM backend.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- one access-log line per request with latency

Lifespan handles startup (engine, services, maintenance task) and shutdown
(cancel maintenance task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin_commands import router as admin_commands_router
from api.routes.v1.admin_devices import router as admin_devices_router
from api.routes.v1.devices import router as devices_router
from api.routes.v1.whitelist import router as whitelist_router
from audit.sink import AuditSink
from auth.tokens import TokenService
from commands.queue import CommandQueue
from commands.whitelist import WhitelistStore
from core.config import Settings, get_settings
from core.db import check_database, make_engine
from core.errors import MDMError, StoreBusy
from devices.store import DeviceStore

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mdm.api")

_RETRY_AFTER_SECONDS = 1

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_services(app: FastAPI, settings: Settings, engine: Engine) -> None:
    """Build the service graph on app.state. Shared by the lifespan and the test fixtures."""
    app.state.settings = settings
    app.state.engine = engine
    app.state.audit = AuditSink(engine, system_actor=settings.system_actor)
    app.state.tokens = TokenService(settings)
    app.state.devices = DeviceStore(engine, app.state.tokens, app.state.audit)
    app.state.commands = CommandQueue(engine, app.state.devices, app.state.audit)
    app.state.whitelists = WhitelistStore(engine, app.state.devices, app.state.audit)


# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


def run_maintenance(app: FastAPI) -> int:
    """Expire stale commands and retry backlogged audit entries. Returns commands expired."""
    expired = 0
    if app.state.settings.command_mode == "queue":
        expired = app.state.commands.expire_stale()
    app.state.audit.flush_pending()
    if app.state.audit.pending_count:
        logger.warning("%d audit entries still pending after flush", app.state.audit.pending_count)
    return expired


async def _maintenance_loop(app: FastAPI) -> None:
    """Run run_maintenance() every EXPIRY_SWEEP_SECONDS.

    The sweep is synchronous database work, so it runs in a worker thread to
    keep the event loop free. A failed sweep is logged and the loop carries on;
    CancelledError from task.cancel() during shutdown unwinds it.
    """
    interval = app.state.settings.expiry_sweep_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_maintenance, app)
        except Exception:
            logger.exception("Maintenance sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine and services on startup; tear them down on shutdown."""
    logger.info("MDM backend starting up (command mode: %s)", _settings.command_mode)
    engine = make_engine(_settings.database_url, _settings.db_lock_timeout_seconds)
    init_services(app, _settings, engine)
    logger.info("Database initialized")
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app))

    yield

    app.state.maintenance_task.cancel()
    engine.dispose()
    logger.info("MDM backend shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Desktop MDM API",
    description="Device enrollment, check-in, and command delivery for desktop agents.",
    version=_settings.version,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Push-Token", "X-Admin-Id"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(devices_router, prefix="/desktopmdm", tags=["Device Agent"])
app.include_router(admin_devices_router, prefix="/admin", tags=["Admin: Devices"])
app.include_router(admin_commands_router, prefix="/admin", tags=["Admin: Commands"])
app.include_router(whitelist_router, prefix="/admin", tags=["Admin: Whitelist"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(MDMError)
async def mdm_error_handler(request: Request, exc: MDMError) -> JSONResponse:
    """Render any domain error with its own status code and machine-readable code."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = _error(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, StoreBusy):
        response.headers["Retry-After"] = str(_RETRY_AFTER_SECONDS)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions (unknown route, wrong method)."""
    response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request, response: Response) -> HealthResponse:
    """Liveness plus a trivial database query. 503 when the database is unreachable."""
    db_ok = check_database(request.app.state.engine)
    if not db_ok:
        response.status_code = 503
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=request.app.state.settings.version,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
