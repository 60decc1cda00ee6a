from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from binpickup.api.error_handling import register_exception_handlers
from binpickup.api.routes import router
from binpickup.config import Settings
from binpickup.logging import bind_request_id, configure_logging, get_logger

_settings = Settings.from_env()
configure_logging(
    _settings.log_level,
    json_output=_settings.log_json,
    development_mode=_settings.log_dev_mode,
)

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
REFRESH_PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# Used when CORS_ORIGINS is unset; never a wildcard
DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # responses carry tokens and personal data
    "Cache-Control": "no-store",
    "API-Version": __version__,
}
HSTS_VALUE = "max-age=63072000; includeSubDomains"


async def _purge_refresh_tokens_forever(interval_seconds: int) -> None:
    from binpickup.service.runtime import get_runtime

    while True:
        try:
            await get_runtime().auth.purge_expired_refresh_tokens()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - retried next cycle
            logger.warning("refresh_token_purge_failed", error=str(exc))
        await asyncio.sleep(max(interval_seconds, 300))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store, run the refresh-token purge, and tear both down on exit."""
    from binpickup.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    purge = asyncio.create_task(
        _purge_refresh_tokens_forever(REFRESH_PURGE_INTERVAL_SECONDS)
    )
    try:
        yield
    finally:
        purge.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge
        try:
            await runtime.stop()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
        else:
            logger.info("runtime_stopped")


app = FastAPI(title="binpickup", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins or DEV_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id for log tracing and stamp the hardening headers.

    A client supplied ``X-Request-ID`` is reused; either way it is echoed
    back on the response.
    """
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if _settings.enable_hsts and request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", HSTS_VALUE)
    return response


register_exception_handlers(app)
app.include_router(router, prefix=_settings.api_prefix)


async def _store_status(store) -> str:
    try:
        await asyncio.wait_for(store.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        return "unhealthy"
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        return "unhealthy"
    return "healthy"


@app.get("/health")
async def health() -> JSONResponse:
    """Store is mandatory (503 when down); the cache only degrades."""
    from binpickup.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, str]] = {
        "store": {"status": await _store_status(runtime.store)},
        "cache": {"status": "healthy" if runtime.cache.available else "degraded"},
    }
    healthy = checks["store"]["status"] == "healthy"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "success" if healthy else "error",
            "message": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {"checks": checks, "version": __version__},
        },
    )


def create_app() -> FastAPI:
    return app
