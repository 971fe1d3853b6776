"""
Process lifecycle for the agent.

AgentServer runs uvicorn until a shutdown is requested (SIGINT, SIGTERM
or ``request_shutdown()``), then:

1. stops admitting new requests and stops accepting connections,
2. gives in-flight requests up to SHUTDOWN_GRACE_SECONDS to finish,
3. forces the server down if they do not,
4. closes the store, strictly after the server has exited.
"""
import asyncio
import contextlib
import functools
import signal

import structlog
import uvicorn
from fastapi import FastAPI

from .config import Settings, get_settings
from .middleware import InFlightTracker
from .store import EventStore

log = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _UvicornServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to AgentServer."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class AgentServer:
    """
    Owns the HTTP server and the shared store for the life of the process.

    Args:
        store: Opened store; closed by ``serve()`` on the way out.
        app: Application from ``create_app`` bound to the same store.
        settings: Listen address, timeouts and grace period.
    """

    def __init__(self, store: EventStore, app: FastAPI, settings: Settings | None = None):
        self.store = store
        self.app = app
        self.settings = settings or get_settings()
        self.tracker: InFlightTracker = app.state.tracker
        self._shutdown = asyncio.Event()
        self._server: _UvicornServer | None = None
        self.forced = False

    @property
    def started(self) -> bool:
        return bool(self._server and self._server.started)

    @property
    def bound_port(self) -> int | None:
        """Actual listening port (useful when configured with port 0)."""
        if not self._server or not self._server.servers:
            return None
        return self._server.servers[0].sockets[0].getsockname()[1]

    def request_shutdown(self) -> None:
        """Begin graceful shutdown. Must be called from the event loop thread."""
        self._shutdown.set()

    def _build_server(self) -> _UvicornServer:
        config = uvicorn.Config(
            self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_config=None,
            access_log=False,
            lifespan="on",
            timeout_keep_alive=max(1, int(self.settings.READ_TIMEOUT_SECONDS)),
            timeout_graceful_shutdown=self.settings.SHUTDOWN_GRACE_SECONDS,
        )
        return _UvicornServer(config)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list:
        """Route shutdown signals to ``request_shutdown``; returns callables that undo it."""
        restore = []
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
                restore.append(functools.partial(loop.remove_signal_handler, sig))
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                previous = signal.signal(
                    sig, lambda *_: loop.call_soon_threadsafe(self.request_shutdown)
                )
                if previous is None:
                    previous = signal.SIG_DFL
                restore.append(functools.partial(signal.signal, sig, previous))
        return restore

    async def serve(self, install_signal_handlers: bool = True) -> None:
        """Run until shutdown is requested, drain, then close the store."""
        loop = asyncio.get_running_loop()
        restore = self._install_signal_handlers(loop) if install_signal_handlers else []

        self._server = self._build_server()
        serve_task = asyncio.create_task(self._server.serve(), name="uvicorn")
        shutdown_task = asyncio.create_task(self._shutdown.wait(), name="shutdown-wait")
        log.info("server.listening", address=self.settings.ADDRESS, db_path=str(self.store.path))

        try:
            done, _ = await asyncio.wait(
                {serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if serve_task in done:
                shutdown_task.cancel()
                serve_task.result()
                log.warning("server.exited_unexpectedly")
            else:
                await self._drain()
                await serve_task
        finally:
            for undo in restore:
                undo()
            self.store.close()
            log.info("server.stopped", forced=self.forced)

    async def _drain(self) -> None:
        grace = self.settings.SHUTDOWN_GRACE_SECONDS
        log.info("server.shutdown_started", in_flight=self.tracker.active, grace_s=grace)

        self.tracker.stop_accepting()
        self._server.should_exit = True

        if not await self.tracker.wait_idle(grace):
            self.forced = True
            log.warning(
                "server.shutdown_forced",
                abandoned=self.tracker.active,
                grace_s=grace,
            )
            self._server.force_exit = True
