"""FastAPI application entry point with lifecycle management."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from . import db
from .cache import cache_manager
from .config import settings
from .errors import register_exception_handlers
from .logger import logger
from .middleware import (
    add_request_id_middleware,
    graceful_shutdown_middleware,
    request_logging_middleware,
    security_headers_middleware,
    set_shutdown_manager,
)
from .monitoring import setup_monitoring
from .routes import limiter, reviews_router, router, tours_router, users_router

# ==================== Graceful Shutdown ====================


class GracefulShutdownManager:
    """Manages graceful shutdown of the application.

    Tracks active requests and ensures all in-flight requests complete
    before shutting down database and cache connections.
    """

    def __init__(self):
        self.is_shutting_down = False
        self.active_requests = 0
        self.shutdown_timeout = settings.GRACEFUL_SHUTDOWN_TIMEOUT

    def request_started(self):
        """Track a new incoming request."""
        if not self.is_shutting_down:
            self.active_requests += 1

    def request_finished(self):
        """Mark a request as completed."""
        self.active_requests = max(0, self.active_requests - 1)

    async def initiate_shutdown(self):
        """Stop accepting requests and wait up to the timeout for in-flight ones."""
        if self.is_shutting_down:
            return

        logger.info("Graceful shutdown initiated")
        self.is_shutting_down = True

        if self.active_requests == 0:
            logger.info("No active requests - proceeding with immediate shutdown")
            return

        logger.info(f"Waiting for {self.active_requests} active request(s) to complete...")
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while self.active_requests > 0:
            if loop.time() - start_time >= self.shutdown_timeout:
                logger.warning(
                    f"Shutdown timeout ({self.shutdown_timeout}s) reached with "
                    f"{self.active_requests} request(s) still active - forcing shutdown"
                )
                break
            await asyncio.sleep(0.1)

        if self.active_requests == 0:
            logger.info("All active requests completed successfully")


shutdown_manager = GracefulShutdownManager()
set_shutdown_manager(shutdown_manager)

# ==================== Application Lifecycle ====================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - handles startup and graceful shutdown."""
    logger.info(f"Starting {settings.APP_NAME} in {settings.APP_ENV} mode")

    db.connect()
    await db.ensure_indexes()

    if settings.CACHE_ENABLED:
        await cache_manager.connect()

    logger.info(f"{settings.APP_NAME} started successfully - ready to accept requests")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await shutdown_manager.initiate_shutdown()

    if settings.CACHE_ENABLED:
        await cache_manager.disconnect()

    await db.dispose_client()

    logger.info(f"{settings.APP_NAME} shutdown complete")

# ==================== Rate Limiting ====================


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded: {request.client.host if request.client else 'unknown'} {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={
            "status": "fail",
            "message": f"Too many requests from this IP ({exc.detail}), please try again later.",
        },
    )

# ==================== Application Setup ====================


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# Middleware registration (last registered = outermost layer)
app.middleware("http")(security_headers_middleware)
app.middleware("http")(request_logging_middleware)
app.middleware("http")(add_request_id_middleware)
app.middleware("http")(graceful_shutdown_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

register_exception_handlers(app)

app.include_router(router)
app.include_router(users_router, prefix=settings.API_PREFIX)
app.include_router(tours_router, prefix=settings.API_PREFIX)
app.include_router(reviews_router, prefix=settings.API_PREFIX)

setup_monitoring(app)
