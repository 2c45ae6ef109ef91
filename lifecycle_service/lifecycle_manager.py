"""Listener lifecycle: non-blocking start, termination wait, bounded graceful stop.

The listener is a uvicorn server embedded in the running event loop. The
manager binds the socket itself so bind failures are reported on the handle
instead of exiting the process, and it owns the stop sequence so a drain that
overruns its timeout is reported as a forced stop.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from collections.abc import Awaitable, Callable, Iterator, MutableMapping
from dataclasses import dataclass, field
from typing import Any

import uvicorn

from .diagnostics import Logger
from .errors import BindError, LifecycleError, ShutdownTimeout
from .server_handle import (
    ServerHandle,
    ServerState,
    StopOutcome,
    StopResult,
    parse_bind_address,
)
from .termination import TerminationReason, TerminationSignal

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]

DEFAULT_SHUTDOWN_TIMEOUT = 10.0
# time allowed for cancelled requests to answer before their connections are aborted
FORCE_CLOSE_GRACE = 0.5
LISTEN_BACKLOG = 2048


class InFlightTracker:
    """ASGI wrapper that counts requests the application has not finished."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app
        self._tasks: set[asyncio.Task[Any]] = set()
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        task = asyncio.current_task()
        if scope["type"] not in ("http", "websocket") or task is None:
            await self.app(scope, receive, send)
            return

        self._tasks.add(task)
        self._drained.clear()
        try:
            await self.app(scope, receive, send)
        finally:
            self._tasks.discard(task)
            if not self._tasks:
                self._drained.set()

    async def wait_drained(self, timeout: float) -> bool:
        """Return True if every request finished within ``timeout`` seconds."""
        if self._drained.is_set():
            return True
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    def cancel_all(self) -> int:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        return len(tasks)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves OS signals to TerminationSignal."""

    def __init__(self, config: uvicorn.Config, on_started: Callable[[], None]) -> None:
        super().__init__(config)
        self._on_started = on_started

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self._on_started()

    def stop_accepting(self) -> None:
        for server in self.servers:
            server.close()

    def abort_connections(self) -> int:
        aborted = 0
        for connection in list(self.server_state.connections):
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.abort()
                aborted += 1
        return aborted


@dataclass
class _Listener:
    tracker: InFlightTracker
    server: _EmbeddedServer | None = None
    stop_task: asyncio.Task[StopResult] | None = field(default=None, repr=False)


async def bind_listening_socket(bind_address: str) -> socket.socket:
    """Resolve and bind ``bind_address``; raise BindError on any failure."""
    host, port = parse_bind_address(bind_address)
    loop = asyncio.get_running_loop()

    try:
        infos = await loop.getaddrinfo(
            host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
    except socket.gaierror as exc:
        raise BindError(bind_address, f"cannot resolve host {host!r}: {exc.strerror}") from exc
    except (UnicodeError, ValueError) as exc:
        # idna encoding rejects empty or over-long labels before any lookup
        raise BindError(bind_address, f"invalid host {host!r}: {exc}") from exc

    family, socktype, proto, _, sockaddr = infos[0]
    sock: socket.socket | None = None
    try:
        sock = socket.socket(family, socktype, proto)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(LISTEN_BACKLOG)
        sock.setblocking(False)
    except OSError as exc:
        if sock is not None:
            sock.close()
        raise BindError(bind_address, exc.strerror or str(exc)) from exc
    return sock


class LifecycleManager:
    def __init__(self, logger: Logger, termination: TerminationSignal | None = None) -> None:
        self.logger = logger
        self.termination = termination or TerminationSignal(logger)
        self._listeners: dict[ServerHandle, _Listener] = {}

    # -----------------------------------------------------------------
    # start
    # -----------------------------------------------------------------

    def start(self, bind_address: str, app: ASGIApp) -> ServerHandle:
        """Start serving ``app`` on ``bind_address`` in the background.

        Returns at once with the handle in ``starting``. Bind failures are not
        raised here: they move the handle to ``failed`` and are re-raised by
        ``handle.wait_running()``.
        """
        handle = ServerHandle(bind_address)
        handle.transition(ServerState.STARTING)

        listener = _Listener(tracker=InFlightTracker(app))
        self._listeners[handle] = listener

        task = asyncio.get_running_loop().create_task(
            self._accept_loop(handle, listener), name=f"accept-loop[{bind_address}]"
        )
        handle.attach_accept_loop(task)
        return handle

    def in_flight_requests(self, handle: ServerHandle) -> int:
        listener = self._listeners.get(handle)
        return listener.tracker.in_flight if listener else 0

    async def _accept_loop(self, handle: ServerHandle, listener: _Listener) -> None:
        try:
            sock = await bind_listening_socket(handle.bind_address)
        except BindError as error:
            handle.transition(ServerState.FAILED, error)
            self._listeners.pop(handle, None)
            self.logger.error(error, "Listener failed to bind")
            return
        except Exception as exc:
            error = BindError(handle.bind_address, str(exc) or type(exc).__name__)
            error.__cause__ = exc
            handle.transition(ServerState.FAILED, error)
            self._listeners.pop(handle, None)
            self.logger.error(exc, "Listener failed to bind", error.to_error_plain_object())
            return

        host, port = sock.getsockname()[:2]
        handle.set_bound_address(host, port)

        config = uvicorn.Config(
            listener.tracker,
            interface="asgi3",
            lifespan="off",
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=None,
        )
        server = _EmbeddedServer(config, on_started=lambda: self._mark_running(handle))
        listener.server = server

        try:
            await server.serve(sockets=[sock])
        except Exception as exc:
            if handle.state in (ServerState.STARTING, ServerState.RUNNING):
                error = LifecycleError(f"Accept loop crashed: {exc}")
                error.__cause__ = exc
                handle.transition(ServerState.FAILED, error)
                self.logger.error(exc, "Accept loop crashed", {"bind_address": handle.bind_address})
        else:
            if handle.state in (ServerState.STARTING, ServerState.RUNNING):
                handle.transition(
                    ServerState.FAILED, LifecycleError("Accept loop exited before stop")
                )
                self.logger.warn("Accept loop exited before stop", {"address": handle.bound_address})
        finally:
            server.stop_accepting()
            sock.close()
            if handle.state is ServerState.FAILED:
                self._listeners.pop(handle, None)

    def _mark_running(self, handle: ServerHandle) -> None:
        if handle.state is ServerState.STARTING:
            handle.transition(ServerState.RUNNING)
            self.logger.info("HTTP server listening", {"address": handle.bound_address})

    # -----------------------------------------------------------------
    # termination
    # -----------------------------------------------------------------

    async def await_termination_signal(self) -> TerminationReason:
        """Suspend until SIGINT, SIGTERM or a programmatic trigger."""
        return await self.termination.wait()

    # -----------------------------------------------------------------
    # stop
    # -----------------------------------------------------------------

    async def stop(
        self, handle: ServerHandle, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    ) -> StopResult:
        """Stop the listener, draining in-flight requests for up to ``timeout`` seconds.

        The stop sequence runs in its own task; cancelling the caller does not
        interrupt it. Repeated calls return the first call's result.
        """
        if handle.stop_result is not None:
            return handle.stop_result

        if handle.state is ServerState.FAILED:
            handle.stop_result = StopResult(StopOutcome.FAILED, error=handle.last_error)
            return handle.stop_result

        listener = self._listeners.get(handle)
        if listener is None:
            return StopResult(
                StopOutcome.FAILED,
                error=LifecycleError(f"{handle!r} is not managed by this lifecycle manager"),
            )

        if listener.stop_task is None:
            listener.stop_task = asyncio.get_running_loop().create_task(
                self._stop(handle, listener, timeout), name=f"stop[{handle.bind_address}]"
            )
        return await asyncio.shield(listener.stop_task)

    async def _stop(self, handle: ServerHandle, listener: _Listener, timeout: float) -> StopResult:
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        deadline = started_at + timeout

        if handle.state is ServerState.STARTING:
            await handle.wait_start_resolved(timeout)

        if handle.state is ServerState.STARTING:
            accept_loop = handle.accept_loop
            if accept_loop is not None:
                accept_loop.cancel()
                await asyncio.gather(accept_loop, return_exceptions=True)
            handle.transition(
                ServerState.FAILED, LifecycleError(f"Listener did not start within {timeout}s")
            )

        if handle.state is ServerState.FAILED:
            return self._finish(
                handle,
                StopResult(
                    StopOutcome.FAILED, duration=loop.time() - started_at, error=handle.last_error
                ),
            )

        handle.transition(ServerState.STOPPING)
        server = listener.server
        tracker = listener.tracker
        if server is None:
            raise LifecycleError(f"{handle!r} is running without a server")

        server.stop_accepting()
        server.should_exit = True
        self.logger.info(
            "HTTP server stopping",
            {"address": handle.bound_address, "in_flight": tracker.in_flight, "timeout": timeout},
        )

        error: ShutdownTimeout | None = None
        abandoned = 0
        if await tracker.wait_drained(deadline - loop.time()):
            remaining = max(deadline - loop.time(), FORCE_CLOSE_GRACE)
            if not await self._wait_accept_loop(handle, remaining):
                error = ShutdownTimeout(timeout, 0)
                await self._force_close(handle, server)
        else:
            abandoned = tracker.in_flight
            error = ShutdownTimeout(timeout, abandoned)
            server.force_exit = True
            tracker.cancel_all()
            if not await self._wait_accept_loop(handle, FORCE_CLOSE_GRACE):
                await self._force_close(handle, server)

        handle.transition(ServerState.STOPPED)
        duration = loop.time() - started_at

        if error is None:
            result = StopResult(StopOutcome.CLEAN, duration=duration)
            self.logger.info(
                "HTTP server stopped", {"address": handle.bound_address, "duration": duration}
            )
        else:
            result = StopResult(
                StopOutcome.FORCED, duration=duration, error=error, abandoned_requests=abandoned
            )
            self.logger.warn(
                "HTTP server stopped forcibly",
                {"address": handle.bound_address, "duration": duration, **error.to_error_plain_object()},
            )
        return self._finish(handle, result)

    async def _wait_accept_loop(self, handle: ServerHandle, timeout: float) -> bool:
        accept_loop = handle.accept_loop
        if accept_loop is None:
            return True
        done, _ = await asyncio.wait({accept_loop}, timeout=timeout)
        return bool(done)

    async def _force_close(self, handle: ServerHandle, server: _EmbeddedServer) -> None:
        server.force_exit = True
        aborted = server.abort_connections()
        accept_loop = handle.accept_loop
        if accept_loop is not None and not accept_loop.done():
            accept_loop.cancel()
            await asyncio.gather(accept_loop, return_exceptions=True)
        self.logger.debug("Aborted open connections", {"connections": aborted})

    def _finish(self, handle: ServerHandle, result: StopResult) -> StopResult:
        handle.stop_result = result
        self._listeners.pop(handle, None)
        return result


def create_lifecycle_manager(
    logger: Logger, termination: TerminationSignal | None = None
) -> LifecycleManager:
    return LifecycleManager(logger, termination)
