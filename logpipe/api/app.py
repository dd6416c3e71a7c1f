"""
Logpipe - FastAPI Application

Creates the ingress app: request logging middleware, structured error
handlers, the ingest and health routers, and a lifespan that connects to
the broker and declares the queue before the first request is served.

Run with: logpipe-api   (or: uvicorn logpipe.api.app:create_app --factory)

A broker that cannot be reached at startup is fatal: the lifespan raises
and the process exits instead of serving requests it cannot honour.

The health probe covers the broker only: the ingress never talks to the
sink. Sink reachability is reported by the persistence worker.
"""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from logpipe import __version__
from logpipe.broker import QueueClient, QueueHandle
from logpipe.config import (
    EXIT_CODE_STARTUP,
    Settings,
    configure_logging,
    get_settings,
    load_settings,
    validate_required_env,
)
from logpipe.core.db import Database
from logpipe.core.errors import setup_error_handlers
from logpipe.core.health import HealthProbe
from logpipe.core.middleware import RequestLoggingMiddleware

from .routers.health import router as health_router
from .routers.ingest import router as ingest_router

logger = logging.getLogger(__name__)

# uvicorn's exit status when the lifespan startup fails
UVICORN_STARTUP_FAILURE = 3


def build_health_probe(queue_client: QueueClient, settings: Settings) -> HealthProbe:
    return HealthProbe(
        {"broker": queue_client.ping},
        ttl_seconds=settings.HEALTH_CACHE_TTL_SECONDS,
        check_timeout=settings.HEALTH_CHECK_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Connect to the broker on startup, close the pool on shutdown.

    A queue client injected through create_app() is owned by the caller
    and is neither started nor closed here.
    """
    settings: Settings = app.state.settings
    owned: Optional[QueueClient] = None

    logger.info(f"Starting logpipe ingress v{__version__} (queue={settings.queue_name})")

    if app.state.queue_client is None:
        owned = QueueClient(
            Database(
                settings.broker_url,
                name="broker",
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=settings.DB_POOL_MAX_SIZE,
            ),
            publish_timeout=settings.PUBLISH_TIMEOUT_SECONDS,
        )
        await owned.start(max_retries=settings.DB_CONNECT_RETRIES)
        app.state.queue_handle = await owned.declare_queue(settings.queue_name)
        app.state.queue_client = owned
        if app.state.health_probe is None:
            app.state.health_probe = build_health_probe(owned, settings)
        logger.info("Broker ready, queue %s declared", settings.queue_name)

    yield

    logger.info("Shutting down logpipe ingress...")
    if owned is not None:
        await owned.close()
    logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    *,
    queue_client: Optional[QueueClient] = None,
    health_probe: Optional[HealthProbe] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Settings to use (defaults to get_settings())
        queue_client: Pre-built, already started queue client. When given,
                      the lifespan does not connect to the broker.
        health_probe: Probe backing /health (built from the queue client
                      when omitted)

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="logpipe",
        description="Accepts log records over HTTP and hands them to a durable queue.",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.queue_client = queue_client
    app.state.queue_handle = QueueHandle(settings.queue_name) if queue_client is not None else None
    if health_probe is None and queue_client is not None:
        health_probe = build_health_probe(queue_client, settings)
    app.state.health_probe = health_probe

    app.add_middleware(RequestLoggingMiddleware)
    setup_error_handlers(app)

    app.include_router(health_router)
    app.include_router(ingest_router)

    return app


def main() -> None:
    """Entry point for the logpipe-api console script."""
    import uvicorn

    parser = argparse.ArgumentParser(description="logpipe HTTP ingress")
    parser.add_argument("--host", help="Bind address (default: HOST)")
    parser.add_argument("--port", type=int, help="Bind port (default: PORT)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    settings = load_settings()
    if args.verbose:
        settings = settings.model_copy(update={"LOG_LEVEL": "DEBUG"})
    configure_logging(settings, service_name="logpipe-api")
    validate_required_env("api", settings)

    try:
        uvicorn.run(
            create_app(settings),
            host=args.host or settings.HOST,
            port=args.port or settings.PORT,
            log_config=None,
        )
    except SystemExit as e:
        if e.code == UVICORN_STARTUP_FAILURE:
            logger.critical("Ingress could not start: broker unavailable")
            raise SystemExit(EXIT_CODE_STARTUP) from e
        raise


if __name__ == "__main__":
    main()
