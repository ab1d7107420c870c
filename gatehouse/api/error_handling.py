from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.logging import get_correlation_id, get_logger, sanitize_error_message
from gatehouse.service.errors import AuthenticationError, ServiceError
from gatehouse.storage.errors import ConstraintViolation

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "server_error",
    headers: dict | None = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=code, message=message, details=details or None),
        request_id=get_correlation_id() or str(uuid4()),
    )
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _challenge(exc: AuthenticationError) -> dict:
    """RFC 6750 challenge for 401 responses."""
    if exc.error_code in {"invalid_token", "token_expired", "invalid_refresh_token"}:
        return {"WWW-Authenticate": 'Bearer error="invalid_token"'}
    return {"WWW-Authenticate": "Bearer"}


def register_exception_handlers(app: FastAPI) -> None:
    """Map the auth error taxonomy and storage conflicts to error envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", path=request.url.path, message=exc.message)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        logger.info("request_validation_failed", path=request.url.path, fields=fields)
        return _error_response(
            400, "invalid request", {"fields": fields}, code="validation_error"
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        server_side = exc.status_code >= 500
        (logger.error if server_side else logger.info)(
            "service_error",
            path=request.url.path,
            status_code=exc.status_code,
            error_code=exc.error_code,
            kind=exc.kind.value if exc.kind else None,
        )
        message = sanitize_error_message(exc.message) if server_side else exc.message
        headers = _challenge(exc) if isinstance(exc, AuthenticationError) else None
        return _error_response(
            exc.status_code, message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
