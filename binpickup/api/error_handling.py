from __future__ import annotations

from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from binpickup.api.schemas import Envelope, FieldProblem
from binpickup.logging import get_logger
from binpickup.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ServiceError,
)
from binpickup.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

# Clients never learn which authentication check failed
GENERIC_AUTH_MESSAGE = "Authentication failed"


def _error_response(
    status_code: int,
    message: str,
    *,
    data: Any = None,
    errors: Optional[List[FieldProblem]] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    envelope = Envelope(status="error", message=message, data=data, errors=errors)
    return JSONResponse(status_code=status_code, content=envelope.render(), headers=headers)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _field_name(loc: tuple) -> str:
    # drop the leading "body"/"query"/"path" segment
    parts = [str(p) for p in loc[1:]] if len(loc) > 1 else [str(p) for p in loc]
    return ".".join(parts) or "body"


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            FieldProblem(field=_field_name(tuple(err.get("loc", ()))), message=err.get("msg", "invalid"))
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[p.field for p in problems],
        )
        return _error_response(400, "Validation failed", errors=problems)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, exc.message)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=exc.message,
        )
        return _error_response(503, "Service temporarily unavailable")

    @app.exception_handler(AccountLockedError)
    async def handle_account_locked(request: Request, exc: AccountLockedError):
        return _error_response(
            exc.status_code,
            "Account is temporarily locked due to too many failed login attempts",
            data={"lockUntil": exc.lock_until.isoformat()},
        )

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        logger.info(
            "authentication_rejected",
            path=request.url.path,
            method=request.method,
            error_code=exc.error_code,
            ip_address=_client_ip(request),
        )
        return _error_response(
            exc.status_code,
            GENERIC_AUTH_MESSAGE,
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "Internal server error")
