from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from importguard.app.core.config import Settings, settings
from importguard.app.core.logging import get_logger, setup_logging
from importguard.app.exceptions import RateLimitExceededError, RateLimitStoreError
from importguard.app.middleware.import_rate_limit import (
    ImportRateLimitMiddleware,
    UserIdResolver,
    default_user_id_resolver,
    internal_error_response,
    rate_limit_exceeded_response,
)
from importguard.app.middleware.request_id import RequestIdMiddleware, get_request_id
from importguard.app.services.import_rate_limit import (
    AtomicWindowStore,
    ImportRateLimiter,
    InMemoryWindowStore,
    RateLimitConfig,
    RedisWindowStore,
)

logger = get_logger(__name__)


def build_window_store(app_settings: Settings) -> AtomicWindowStore:
    """Select the window store from settings.

    Redis is required for limits shared across instances; without it each
    process enforces its own limits.
    """
    if app_settings.redis_enabled:
        logger.info("Using Redis window store for import rate limiting")
        return RedisWindowStore.from_url(
            app_settings.redis_url,
            socket_timeout=app_settings.redis_socket_timeout,
            socket_connect_timeout=app_settings.redis_connect_timeout,
        )
    logger.warning(
        "Redis disabled: import rate limits are enforced per process only"
    )
    return InMemoryWindowStore()


def create_app(
    store: Optional[AtomicWindowStore] = None,
    user_id_resolver: UserIdResolver = default_user_id_resolver,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Window store to use; built from settings when omitted
        user_id_resolver: Extracts the authenticated user from a request
        app_settings: Settings override (defaults to the global settings)

    Returns:
        Configured FastAPI application instance
    """
    cfg = app_settings or settings
    setup_logging()

    owns_store = store is None
    window_store = store if store is not None else build_window_store(cfg)
    limiter = ImportRateLimiter(window_store, RateLimitConfig.from_settings(cfg))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Verifies the window store on startup and closes it on shutdown.
        """
        if not await window_store.ping():
            # Requests will get a 500 until the store comes back
            logger.error("Window store is not reachable at startup")

        rate_config = limiter.config
        logger.info(
            "Import rate limiting enabled: "
            f"user={rate_config.user.max_count}/{rate_config.user.window}, "
            f"ip={rate_config.ip.max_count}/{rate_config.ip.window}, "
            f"wallet={rate_config.wallet.max_count}/{rate_config.wallet.window}"
        )

        yield

        if owns_store:
            await window_store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Import Guard",
        description="Distributed rate limiting for transaction imports",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.window_store = window_store
    app.state.import_rate_limiter = limiter

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        ImportRateLimitMiddleware,
        limiter=limiter,
        paths=cfg.import_rate_limit_paths,
        user_id_resolver=user_id_resolver,
        trust_forwarded_for=cfg.trust_forwarded_for,
        enabled=cfg.import_rate_limit_enabled,
    )

    # Request ID middleware (outermost, so rate limit logs carry the ID)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint with window store status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        store_type = "redis" if isinstance(window_store, RedisWindowStore) else "memory"
        if await window_store.ping():
            health_status["components"]["rate_limit_store"] = {"status": "ok", "type": store_type}
        else:
            health_status["status"] = "degraded"
            health_status["components"]["rate_limit_store"] = {"status": "error", "type": store_type}
        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return rate_limit_exceeded_response(exc.result)

    @app.exception_handler(RateLimitStoreError)
    async def store_error_handler(request: Request, exc: RateLimitStoreError) -> JSONResponse:
        """Store failures are internal errors, never a denial."""
        request_id = get_request_id(request)
        logger.error(
            f"Window store error [request_id={request_id}]: {exc.message}",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )
        return internal_error_response("Internal server error")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; details go to the server log.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )
        content: dict[str, Any] = {
            "success": False,
            "message": "Internal server error",
            "error": {"code": "INTERNAL_ERROR"},
            "request_id": request_id,
        }
        if cfg.debug:
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
