from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from flamingo.api.schemas import Envelope, ErrorBody
from flamingo.logging import get_logger
from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    429: ErrorCode.TOO_MANY_REQUESTS,
}


def _error_code_for_status(status_code: int) -> ErrorCode:
    if status_code >= 500:
        return ErrorCode.INTERNAL_SERVER_ERROR
    return _STATUS_TO_CODE.get(status_code, ErrorCode.VALIDATION_ERROR)


def _error_response(
    status_code: int,
    code: ErrorCode,
    message: str | None = None,
    details: Any = None,
) -> JSONResponse:
    body = ErrorBody(code=code.value, message=message or code.message, details=details)
    envelope = Envelope(success=False, error=body)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def _field_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "invalid value")})
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that turn every failure into an error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            cause = exc.__cause__
            logger.error(
                "service_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=exc.code.value,
                cause_type=type(cause).__name__ if cause else None,
                cause=str(cause) if cause else None,
            )
        else:
            logger.warning(
                "service_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=exc.code.value,
                details=exc.details,
            )
        return _error_response(exc.status_code, exc.code, details=exc.details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        return _error_response(400, ErrorCode.VALIDATION_ERROR, details=errors)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, ErrorCode.CONFLICT, details=exc.detail or None)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        code = _error_code_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else code.message
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, ErrorCode.INTERNAL_SERVER_ERROR)
