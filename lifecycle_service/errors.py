"""Error kinds raised and reported by the listener lifecycle."""

from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """Base class for lifecycle failures."""

    def to_error_plain_object(self) -> dict[str, Any]:
        return {}


class BindError(LifecycleError):
    """The listener could not bind its address. Fatal for the handle, never retried."""

    def __init__(self, bind_address: str, reason: str) -> None:
        super().__init__(f"Failed to bind {bind_address}: {reason}")
        self.bind_address = bind_address
        self.reason = reason

    def to_error_plain_object(self) -> dict[str, Any]:
        return {"bind_address": self.bind_address, "reason": self.reason}


class ShutdownTimeout(LifecycleError):
    """In-flight requests did not drain before the stop timeout elapsed."""

    def __init__(self, timeout: float, outstanding: int) -> None:
        super().__init__(
            f"Graceful shutdown timed out after {timeout:.3f}s "
            f"with {outstanding} request(s) in flight"
        )
        self.timeout = timeout
        self.outstanding = outstanding

    def to_error_plain_object(self) -> dict[str, Any]:
        return {"timeout_seconds": self.timeout, "outstanding_requests": self.outstanding}


class HandlerFailure(LifecycleError):
    """A request handler raised; contained to the failing request."""

    def __init__(self, method: str, path: str, cause: BaseException) -> None:
        super().__init__(f"{method} {path} failed: {cause!r}")
        self.method = method
        self.path = path
        self.cause = cause

    def to_error_plain_object(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "cause": type(self.cause).__name__,
        }


class InvalidStateTransition(LifecycleError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid server state transition {current} -> {target}")
        self.current = current
        self.target = target

    def to_error_plain_object(self) -> dict[str, Any]:
        return {"current_state": self.current, "target_state": self.target}
