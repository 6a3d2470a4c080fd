"""Application error taxonomy, store error normalization, and JSON rendering.

Every failure that leaves a request handler is an ``AppError`` subclass by the
time it reaches the exception handlers registered in ``main.py``. Store and
validation library errors are translated by ``normalize_store_error`` at the
store boundary so generic code never pattern-matches driver exceptions.
"""

import traceback

from bson.errors import InvalidId
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .logger import logger


# ==================== Error Codes ====================

class ErrorCode:
    """Centralized error codes for API responses."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_TOKEN = "INVALID_TOKEN"
    USER_GONE = "USER_GONE"
    STALE_PASSWORD = "STALE_PASSWORD"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    INVALID_OR_EXPIRED_TOKEN = "INVALID_OR_EXPIRED_TOKEN"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL = "INTERNAL"


# ==================== Error Taxonomy ====================

class AppError(Exception):
    """Operational error that is rendered into the standard envelope."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = ErrorCode.INTERNAL
    headers: dict[str, str] | None = None

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = ErrorCode.VALIDATION_ERROR


class Conflict(AppError):
    """Duplicate value for a unique field."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = ErrorCode.CONFLICT


class InvalidOrExpiredToken(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = ErrorCode.INVALID_OR_EXPIRED_TOKEN


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = ErrorCode.UNAUTHENTICATED
    headers = {"WWW-Authenticate": "Bearer"}


class InvalidToken(Unauthenticated):
    code = ErrorCode.INVALID_TOKEN


class UserGone(Unauthenticated):
    code = ErrorCode.USER_GONE


class StalePassword(Unauthenticated):
    code = ErrorCode.STALE_PASSWORD


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = ErrorCode.FORBIDDEN


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = ErrorCode.NOT_FOUND


class InternalError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = ErrorCode.INTERNAL


class ServiceUnavailable(AppError):
    """Instance is draining; clients should retry elsewhere."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = ErrorCode.SERVICE_UNAVAILABLE
    headers = {"Retry-After": "10"}


# ==================== Store Boundary Normalization ====================

def _validation_messages(exc: PydanticValidationError | RequestValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def normalize_store_error(exc: Exception) -> AppError:
    """Translate driver/ODM-specific exceptions into the application taxonomy."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, DuplicateKeyError) or getattr(exc, "code", None) == 11000:
        key_value = (getattr(exc, "details", None) or {}).get("keyValue")
        if key_value:
            rendered = ", ".join(f"{k}: {v!r}" for k, v in key_value.items())
            return Conflict(
                f"Duplicate field value: {rendered}. Please use another value!",
                {"keyValue": key_value},
            )
        return Conflict("Duplicate field value. Please use another value!")
    if isinstance(exc, InvalidId):
        return ValidationError(f"Invalid _id: {exc}.")
    if isinstance(exc, PydanticValidationError):
        return ValidationError(f"Invalid input data. {'. '.join(_validation_messages(exc))}")
    return InternalError(str(exc) or exc.__class__.__name__)


# ==================== Rendering ====================

def render_error(error: AppError, original: Exception | None = None) -> JSONResponse:
    content = {"status": error.status, "message": error.message}
    if not settings.is_production:
        content["error"] = error.code
        if error.details:
            content["details"] = error.details
        source = original or error
        content["stack"] = "".join(
            traceback.format_exception(type(source), source, source.__traceback__)
        )
    return JSONResponse(status_code=error.status_code, content=content, headers=error.headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} - {exc.code}: {exc.message}")
    return render_error(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError(f"Invalid input data. {'. '.join(_validation_messages(exc))}")
    return render_error(error, exc)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework-level HTTP errors (unmatched routes, wrong method) as envelopes."""
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        error = NotFound(f"Can't find {request.url.path} on this server!")
    else:
        error = AppError(str(exc.detail))
        error.status_code = exc.status_code
        error.code = ErrorCode.INTERNAL if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR
    response = render_error(error, exc)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler for programming errors and unknown failures."""
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {exc}",
        exc_info=exc,
    )
    if settings.is_production:
        return render_error(InternalError("Something went very wrong!"))
    return render_error(normalize_store_error(exc), exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
