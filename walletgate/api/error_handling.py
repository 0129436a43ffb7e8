from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from walletgate.api.schemas import Envelope, ErrorBody
from walletgate.logging import get_logger, sanitize_error_message
from walletgate.service.errors import ServiceError
from walletgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(event: str, request: Request, status_code: int, **fields: Any) -> None:
    # Client mistakes are warnings; anything the server owns is an error
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _envelope_detail(detail: Any) -> Optional[dict]:
    """Return the ``error`` object of an envelope-shaped HTTPException detail."""
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        return detail["error"]
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Map service, storage and HTTP errors onto the response envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(
            "constraint_violation", request, 409, message=exc.message, field=exc.field
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            "service_error",
            request,
            exc.status_code,
            error_code=exc.error_code,
            reason=exc.detail.get("reason"),
            message=exc.message,
        )
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
        return _error_response(exc.status_code, message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        error_obj = _envelope_detail(exc.detail)
        if error_obj is not None:
            code = error_obj.get("code")
            message = error_obj.get("message", "http error")
            _log_failure("http_error", request, exc.status_code, error_code=code)
            return _error_response(
                exc.status_code, message, error_obj.get("details"), code=code
            )
        message = str(exc.detail) if exc.detail else "http error"
        if exc.status_code >= 500:
            _log_failure("http_error_fallback", request, exc.status_code, message=message)
            message = sanitize_error_message(message)
        return _error_response(exc.status_code, message)

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
        return _error_response(500, "internal server error", code="server_error")
