"""
BrowseTrace agent - local browser activity ingestion service.

Features:
- Atomic batched event persistence to SQLite (WAL)
- Structured logging with correlation IDs
- Prometheus metrics
- Liveness health check
- Graceful, bounded shutdown on SIGINT/SIGTERM
"""
import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from .api.router import router
from .config import Settings, get_settings
from .errors import StoreOpenError
from .health import router as health_router
from .logging import setup_logging, get_logger
from .metrics import Metrics
from .middleware import AdmissionMiddleware, CorrelationIdMiddleware, InFlightTracker, MetricsMiddleware
from .paths import database_path
from .server import AgentServer
from .store import EventStore

__version__ = "0.1.0"

logger = get_logger()


def create_app(
    store: EventStore,
    settings: Settings | None = None,
    metrics: Metrics | None = None,
    tracker: InFlightTracker | None = None,
) -> FastAPI:
    """
    Build the HTTP application around an opened store.

    The store is shared by every request and reached through
    ``app.state.store``; nothing here closes it.
    """
    settings = settings or get_settings()
    metrics = metrics or Metrics(service_name="browsetrace", version=__version__)
    tracker = tracker or InFlightTracker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("service_starting", version=__version__, address=settings.ADDRESS)
        try:
            yield
        finally:
            logger.info("service_stopping")
            metrics.mark_down()

    app = FastAPI(
        title="BrowseTrace Agent",
        version=__version__,
        description="Local ingestion service for browser activity events",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.tracker = tracker

    # Last added runs first: correlation id, then metrics, then admission
    app.add_middleware(AdmissionMiddleware, tracker=tracker)
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(router)
    app.include_router(health_router)

    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    return app


def main() -> int:
    settings = get_settings()
    setup_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)

    try:
        db_path = database_path(settings)
        store = EventStore.open(db_path, busy_timeout_ms=settings.BUSY_TIMEOUT_MS)
    except (StoreOpenError, OSError) as exc:
        logger.critical("startup_failed", error=str(exc))
        return 1

    logger.info("store.ready", path=str(db_path), events=store.count())

    app = create_app(store, settings=settings)
    server = AgentServer(store, app, settings=settings)
    asyncio.run(server.serve())
    return 0


if __name__ == "__main__":
    sys.exit(main())
