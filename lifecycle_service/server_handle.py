"""Server handle: state, identity and stop outcome of one network listener."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from enum import Enum

from .errors import BindError, InvalidStateTransition, LifecycleError

DEFAULT_PORT = 8080
DEFAULT_HOST = "0.0.0.0"


class ServerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ServerState.STOPPED, ServerState.FAILED})

ALLOWED_TRANSITIONS: dict[ServerState, frozenset[ServerState]] = {
    ServerState.IDLE: frozenset({ServerState.STARTING}),
    ServerState.STARTING: frozenset({ServerState.RUNNING, ServerState.FAILED}),
    ServerState.RUNNING: frozenset({ServerState.STOPPING, ServerState.FAILED}),
    ServerState.STOPPING: frozenset({ServerState.STOPPED}),
    ServerState.STOPPED: frozenset(),
    ServerState.FAILED: frozenset(),
}


class StopOutcome(str, Enum):
    CLEAN = "clean"
    FORCED = "forced"
    FAILED = "failed"


@dataclass(frozen=True)
class StopResult:
    outcome: StopOutcome
    duration: float = 0.0
    error: LifecycleError | None = None
    abandoned_requests: int = 0

    @property
    def is_clean(self) -> bool:
        return self.outcome is StopOutcome.CLEAN


@dataclass(frozen=True)
class HandleSnapshot:
    bind_address: str
    bound_address: str | None
    state: ServerState
    error: LifecycleError | None


# ---------------------------------------------------------------------
# Bind address helpers
# ---------------------------------------------------------------------


def parse_bind_address(bind_address: str, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """Split ``host:port`` into its parts.

    Accepts ``host:port``, ``:port`` (all interfaces), ``host`` (default port)
    and bracketed IPv6 literals such as ``[::1]:8080``. Raises BindError for
    anything that cannot name a listening address.
    """
    value = bind_address.strip()

    if value.startswith("["):
        host, closed, rest = value[1:].partition("]")
        if not closed:
            raise BindError(bind_address, "unterminated IPv6 literal")
        if rest and not rest.startswith(":"):
            raise BindError(bind_address, "unexpected characters after IPv6 literal")
        port_text = rest[1:]
    elif value.count(":") > 1:
        host, port_text = value, ""
    else:
        host, _, port_text = value.partition(":")

    if not port_text:
        port = default_port
    else:
        try:
            port = int(port_text)
        except ValueError:
            raise BindError(bind_address, f"invalid port {port_text!r}") from None

    if not 0 <= port <= 65535:
        raise BindError(bind_address, f"port {port} out of range")

    return host or DEFAULT_HOST, port


def format_bind_address(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# ---------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------


class ServerHandle:
    """One listener instance.

    State is only ever moved forward through ``transition``. Reads go through a
    lock so a health check running in another thread sees a consistent
    snapshot.
    """

    def __init__(self, bind_address: str) -> None:
        self.bind_address = bind_address
        self._lock = threading.Lock()
        self._state = ServerState.IDLE
        self._error: LifecycleError | None = None
        self._bound_address: str | None = None
        self._accept_loop: asyncio.Task[None] | None = None
        self._start_resolved = asyncio.Event()
        self.stop_result: StopResult | None = None

    # -- reads ---------------------------------------------------------

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    @property
    def last_error(self) -> LifecycleError | None:
        with self._lock:
            return self._error

    @property
    def bound_address(self) -> str | None:
        with self._lock:
            return self._bound_address

    @property
    def port(self) -> int | None:
        bound = self.bound_address
        if bound is None:
            return None
        return int(bound.rsplit(":", 1)[1])

    @property
    def accept_loop(self) -> asyncio.Task[None] | None:
        return self._accept_loop

    def snapshot(self) -> HandleSnapshot:
        with self._lock:
            return HandleSnapshot(
                bind_address=self.bind_address,
                bound_address=self._bound_address,
                state=self._state,
                error=self._error,
            )

    def is_running(self) -> bool:
        return self.state is ServerState.RUNNING

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # -- writes --------------------------------------------------------

    def transition(self, target: ServerState, error: LifecycleError | None = None) -> None:
        with self._lock:
            if target not in ALLOWED_TRANSITIONS[self._state]:
                raise InvalidStateTransition(self._state.value, target.value)
            self._state = target
            if error is not None:
                self._error = error

        if target in (ServerState.RUNNING, ServerState.FAILED):
            self._start_resolved.set()

    def set_bound_address(self, host: str, port: int) -> None:
        with self._lock:
            self._bound_address = format_bind_address(host, port)

    def attach_accept_loop(self, task: asyncio.Task[None]) -> None:
        if self._accept_loop is not None and not self._accept_loop.done():
            raise InvalidStateTransition(self.state.value, "second accept loop")
        self._accept_loop = task

    # -- waiting -------------------------------------------------------

    async def wait_start_resolved(self, timeout: float | None = None) -> ServerState:
        """Wait until the handle is running or failed, whichever happens first."""
        if timeout is None:
            await self._start_resolved.wait()
        else:
            try:
                await asyncio.wait_for(self._start_resolved.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        return self.state

    async def wait_running(self, timeout: float | None = None) -> None:
        """Wait for the listener to accept connections; raise its BindError if it failed."""
        state = await self.wait_start_resolved(timeout)
        if state is ServerState.FAILED:
            error = self.last_error
            raise error if error is not None else LifecycleError("Listener failed to start")
        if state is ServerState.STARTING:
            raise asyncio.TimeoutError(f"Listener {self.bind_address} did not start in time")

    def __repr__(self) -> str:
        snap = self.snapshot()
        return (
            f"ServerHandle(bind_address={snap.bind_address!r}, "
            f"bound_address={snap.bound_address!r}, state={snap.state.value})"
        )
