"""One-shot shutdown trigger fed by OS signals or by callers."""

from __future__ import annotations

import asyncio
import signal
from enum import Enum

from .diagnostics import Logger


class TerminationReason(str, Enum):
    INTERRUPT = "interrupt"
    TERMINATE = "terminate"
    PROGRAMMATIC = "programmatic"


SIGNAL_REASONS: dict[signal.Signals, TerminationReason] = {
    signal.SIGINT: TerminationReason.INTERRUPT,
    signal.SIGTERM: TerminationReason.TERMINATE,
}


class TerminationSignal:
    """Broadcast shutdown trigger.

    The first ``trigger`` wins and fixes the reason; every waiter, present or
    future, observes that same reason. Later triggers are ignored.
    """

    def __init__(self, logger: Logger | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: TerminationReason | None = None
        self._logger = logger
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    @property
    def reason(self) -> TerminationReason | None:
        return self._reason

    def is_triggered(self) -> bool:
        return self._reason is not None

    def trigger(self, reason: TerminationReason = TerminationReason.PROGRAMMATIC) -> bool:
        if self._reason is not None:
            return False
        self._reason = reason
        self._event.set()
        if self._logger:
            self._logger.warn("Shutdown signal received", {"reason": reason.value})
        return True

    async def wait(self) -> TerminationReason:
        await self._event.wait()
        return self._reason or TerminationReason.PROGRAMMATIC

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGINT and SIGTERM to this trigger via the running event loop."""
        self._loop = loop or asyncio.get_running_loop()
        for sig, reason in SIGNAL_REASONS.items():
            self._loop.add_signal_handler(sig, self.trigger, reason)
            self._installed.append(sig)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            self._loop.remove_signal_handler(sig)
        self._installed.clear()
        self._loop = None
