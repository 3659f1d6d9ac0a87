from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pinguard.api.schemas import Envelope, ErrorBody
from pinguard.logging import get_logger, sanitize_error_message
from pinguard.service.errors import ServiceError, user_message
from pinguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limit_exceeded",
    500: "server_error",
    503: "internal_error",
}

# Detail keys a client may see; everything else stays in logs and the audit trail
_CLIENT_DETAIL_KEYS = frozenset({"errors", "suggestions", "fallback_to_pin"})


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _client_details(detail: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not detail:
        return None
    visible = {key: value for key, value in detail.items() if key in _CLIENT_DETAIL_KEYS}
    return visible or None


def _error_response(
    request: Request,
    status_code: int,
    code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    *,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    """Build the error envelope; the message always comes from the localized catalogue."""
    error_code = code or _error_code_for_status(status_code)
    message = user_message(error_code, request.headers.get("Accept-Language"))
    if retry_after is not None:
        details = {**(details or {}), "retry_after_seconds": retry_after}
    envelope = Envelope(
        status="error", error=ErrorBody(code=error_code, message=message, details=details)
    )
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(request, 409, "conflict")

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
        return _error_response(
            request,
            exc.status_code,
            exc.error_code,
            _client_details(exc.detail),
            retry_after=exc.retry_after,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        logger.info("request_validation_failed", path=request.url.path, fields=fields)
        return _error_response(request, 400, "validation_error", {"fields": fields})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=sanitize_error_message(str(exc.detail)),
            )
        return _error_response(request, exc.status_code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(request, 503, "internal_error")
