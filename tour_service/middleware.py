"""HTTP middleware for request handling, logging, and security."""

import time
import uuid

from fastapi import Request

from .config import settings
from .errors import ServiceUnavailable, render_error
from .logger import logger

# Set by main.py to avoid a circular import
shutdown_manager = None

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # Swagger UI loads its assets from jsDelivr
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
        "img-src 'self' data: https://cdn.jsdelivr.net; "
        "font-src 'self' https://cdn.jsdelivr.net"
    ),
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}

# Session cookies are marked secure in production, so HTTPS is pinned there too
PRODUCTION_SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


def set_shutdown_manager(manager):
    """Set the shutdown manager instance (called from main.py)."""
    global shutdown_manager
    shutdown_manager = manager


def _describe(request: Request) -> str:
    request_id = getattr(request.state, "request_id", "unknown")
    return f"[{request_id}] {request.method} {request.url.path}"


# ==================== Graceful Shutdown Middleware ====================

async def graceful_shutdown_middleware(request: Request, call_next):
    """Count in-flight requests; refuse new ones with a 503 envelope while draining."""
    if shutdown_manager is None:
        return await call_next(request)

    if shutdown_manager.is_shutting_down:
        logger.warning(f"Rejecting {request.method} {request.url.path} - service is shutting down")
        return render_error(
            ServiceUnavailable("Service is shutting down - please retry with another instance")
        )

    shutdown_manager.request_started()
    try:
        return await call_next(request)
    finally:
        shutdown_manager.request_finished()


# ==================== Request ID Middleware ====================

async def add_request_id_middleware(request: Request, call_next):
    """Reuse the caller's X-Request-ID or mint one, and echo it on the response."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ==================== Request Logging Middleware ====================

async def request_logging_middleware(request: Request, call_next):
    """Log each request on arrival and on completion with its duration."""
    started = time.perf_counter()
    described = _describe(request)
    logger.info(f"{described} - Request received")

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            f"{described} - Error: {e} - Duration: {time.perf_counter() - started:.3f}s",
            exc_info=True,
        )
        raise

    logger.info(
        f"{described} - Status: {response.status_code} - "
        f"Duration: {time.perf_counter() - started:.3f}s"
    )
    return response


# ==================== Security Headers Middleware ====================

async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(SECURITY_HEADERS)
    if settings.is_production:
        response.headers.update(PRODUCTION_SECURITY_HEADERS)
    return response
