"""
api/main.py -- FastAPI application entry point for SessionGuard.

Exposes the session-security core to an HTTP service: the lifespan wires the
components into app.state, auth/dependencies.py reads them from there, and a
background task sweeps dead credentials. Login/refresh routes belong to the
host application; this module only ships health and session introspection.

Run with:  uvicorn api.main:app --reload

Lifespan handles startup (settings, keys, stores, cleanup task) and shutdown
(cancel cleanup task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse, SessionResponse
from auth.dependencies import get_current_claims
from auth.errors import AuthError, RateLimitedError, StoreUnavailableError
from auth.models import TokenClaims
from core.bootstrap import build_components
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionguard.api")

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Sweep expired/revoked refresh tokens and expired TTL rows every interval.

    The sweep runs in a worker thread so the database deletes never hold the
    event loop. It only touches rows no request can use any more, so it is
    safe alongside live traffic. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result, purged = await asyncio.to_thread(app.state.auth_service.sweep)
        except StoreUnavailableError as exc:
            logger.error("Cleanup sweep failed: %s", exc)
            continue
        except Exception:
            logger.exception("Unexpected error in cleanup sweep")
            continue
        logger.info(
            "Cleanup sweep: %d expired + %d revoked refresh tokens, %d TTL rows",
            result.expired,
            result.revoked,
            purged,
        )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- the validator rejects bad lifetimes before any
         store is opened.
      2. Components second -- key loading raises KeyMaterialError here, so a
         missing keypair stops the server instead of failing every request.
      3. Cleanup task last -- references app.state.auth_service.
    """
    # Startup
    logger.info("SessionGuard API starting up")
    settings = get_settings()
    components = build_components(settings)
    app.state.settings = settings
    app.state.components = components
    app.state.auth_service = components.service
    logger.info("Signing key loaded (kid=%s)", components.signer.key_id)
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.cleanup_interval_seconds))

    yield

    # Shutdown
    app.state.cleanup_task.cancel()
    components.close()
    logger.info("SessionGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGuard API",
    description="Token issuance, revocation and brute-force mitigation core.",
    version=VERSION,
    lifespan=lifespan,
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
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


@app.exception_handler(RateLimitedError)
async def rate_limit_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
    """429 with Retry-After in whole seconds."""
    response = _error(429, exc.code, str(exc))
    response.headers["Retry-After"] = str(max(1, exc.retry_after))
    return response


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, exc.code, "A backing store is unavailable. Try again later.")


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return _error(401, exc.code, str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus reachability of the TTL store and the relational store.

    Always 200: a degraded TTL store means revocation checks fail open, which
    is a warning condition, not an outage.
    """
    components = request.app.state.components
    ttl_ok = components.ttl_store.ping()
    try:
        with components.refresh_tokens.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        db_ok = False
    status = "healthy" if ttl_ok and db_ok else "degraded"
    return HealthResponse(
        status=status,
        version=VERSION,
        components={
            "app": "ok",
            "ttl_store": "ok" if ttl_ok else "error",
            "database": "ok" if db_ok else "error",
        },
    )


@app.get("/api/v1/session", tags=["Session"])
def current_session(claims: TokenClaims = Depends(get_current_claims)) -> SessionResponse:
    """Return the verified claims of the presented access token."""
    return SessionResponse.from_claims(claims)
