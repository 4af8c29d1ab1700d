import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from izibrokerz.app.api.metrics import router as metrics_router
from izibrokerz.app.api.rate_limit import router as rate_limit_router
from izibrokerz.app.core.config import Settings, settings as default_settings
from izibrokerz.app.core.logging import get_logger, setup_logging
from izibrokerz.app.exceptions import IziBrokerzException, RateLimitExceededError
from izibrokerz.app.middleware.request_id import RequestIdMiddleware, get_request_id
from izibrokerz.app.ratelimit.gate import RateLimitGate, create_gate
from izibrokerz.app.ratelimit.metrics import RateLimitMetrics


async def _cleanup_loop(gate: RateLimitGate, interval: float) -> None:
    """Purge aged-out buckets every ``interval`` seconds until cancelled."""
    logger = get_logger(__name__)
    while True:
        await asyncio.sleep(interval)
        try:
            await gate.cleanup()
        except Exception:
            logger.exception("Rate limit cleanup failed")


def create_app(
    config: Optional[Settings] = None,
    gate: Optional[RateLimitGate] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The application is the composition root: it owns the settings, the
    metrics collector and the rate limit gate, all exposed on ``app.state``.

    Args:
        config: Settings to use (defaults to the environment-loaded instance)
        gate: Pre-built gate, mainly for tests; built from settings otherwise

    Returns:
        Configured FastAPI application instance
    """
    config = config or default_settings
    setup_logging(config)
    logger = get_logger(__name__)

    if gate is None:
        gate = create_gate(config, metrics=RateLimitMetrics())
    elif gate.metrics is None:
        gate.metrics = RateLimitMetrics()
    metrics = gate.metrics

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the bucket cleanup task; close the bucket store on shutdown."""
        cleanup_task = asyncio.create_task(
            _cleanup_loop(gate, config.rate_limit_cleanup_interval_seconds)
        )
        logger.info(
            "Application startup complete",
            extra={
                "backend": gate.backend.name,
                "rate_limiting_enabled": gate.enabled,
                "policies": sorted(gate.policies),
            },
        )

        yield

        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
        await gate.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="iziBrokerz Rate Limit Service",
        description="Abuse protection for login, forms, property listings and the AI assistant",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.rate_limit_gate = gate
    app.state.rate_limit_metrics = metrics

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=config.cors_origins != ["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=600,
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(rate_limit_router)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "backend": gate.backend.name,
            "rate_limiting_enabled": gate.enabled,
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "retry_after_ms": exc.retry_after_ms,
            },
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(IziBrokerzException)
    async def service_exception_handler(
        request: Request, exc: IziBrokerzException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if config.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
