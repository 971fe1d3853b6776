"""
Middleware for observability and request admission.

Registered in ``create_app``; the outermost layer binds the correlation id
so every log line below it, including the store's, carries the id.
"""
import asyncio
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from .logging import get_logger
from .metrics import Metrics

CORRELATION_HEADER = "x-correlation-id"

logger = get_logger()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with a correlation id.

    A caller-supplied ``X-Correlation-ID`` is reused, otherwise a UUID4 is
    minted. The id is bound into the structlog context for the duration of
    the request and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        if CORRELATION_HEADER not in request.headers:
            logger.debug("http.correlation_id_assigned")

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts and times every request except scrapes of ``/metrics``."""

    def __init__(self, app, metrics: Metrics):
        super().__init__(app)
        self.metrics = metrics

    def _record(self, request: Request, status_code: int, elapsed: float) -> None:
        service = self.metrics.service_name
        path = request.url.path
        self.metrics.http_requests_total.labels(
            service=service, method=request.method, path=path, status=status_code
        ).inc()
        self.metrics.http_request_duration.labels(
            service=service, method=request.method, path=path
        ).observe(elapsed)

    async def dispatch(self, request: Request, call_next):
        # Scrapes refresh process gauges and are not counted themselves
        if request.url.path.startswith("/metrics"):
            self.metrics.update_system_metrics()
            return await call_next(request)

        active = self.metrics.http_requests_active.labels(service=self.metrics.service_name)
        active.inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            self._record(request, 500, elapsed)
            logger.error(
                "http.request_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                duration_ms=round(elapsed * 1000, 2),
            )
            raise
        finally:
            active.dec()

        elapsed = time.perf_counter() - started
        self._record(request, response.status_code, elapsed)
        logger.info(
            "http.request",
            http_status=response.status_code,
            duration_ms=round(elapsed * 1000, 2),
        )
        return response


class InFlightTracker:
    """
    Counts requests in progress and closes admission on shutdown.

    Once ``stop_accepting()`` has been called no new request is admitted,
    and ``wait_idle()`` resolves when the last admitted request finishes.
    All methods are called from the event loop thread.
    """

    def __init__(self):
        self._active = 0
        self._accepting = True
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def active(self) -> int:
        return self._active

    @property
    def accepting(self) -> bool:
        return self._accepting

    def try_enter(self) -> bool:
        if not self._accepting:
            return False
        self._active += 1
        self._idle.clear()
        return True

    def leave(self) -> None:
        self._active -= 1
        if self._active <= 0:
            self._active = 0
            self._idle.set()

    def stop_accepting(self) -> None:
        self._accepting = False

    async def wait_idle(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for in-flight requests; True if drained."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Rejects requests with 503 once shutdown has begun; tracks the rest."""

    def __init__(self, app, tracker: InFlightTracker):
        super().__init__(app)
        self.tracker = tracker

    async def dispatch(self, request: Request, call_next):
        if not self.tracker.try_enter():
            logger.info("http.request_refused", reason="shutting_down")
            return PlainTextResponse(
                "Server is shutting down",
                status_code=503,
                headers={"Connection": "close"},
            )
        try:
            return await call_next(request)
        finally:
            self.tracker.leave()
