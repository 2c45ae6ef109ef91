"""Request counting and request ID generation.

The counter is an explicitly owned object handed to whoever needs it (the HTTP
middleware, the heartbeat job) instead of module-level state.
"""

from __future__ import annotations

import random
import string
import threading

BASE36_ALPHABET = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("to_base36 expects a non-negative integer")
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


class RequestCounter:
    """Thread-safe monotonically increasing counter."""

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class RequestIdGenerator:
    """Builds ``<sequence>-<random base36>`` identifiers."""

    def __init__(self, counter: RequestCounter, rng: random.Random | None = None) -> None:
        self.counter = counter
        self._rng = rng or random.Random()

    def generate(self, sequence: int | None = None) -> str:
        """Return a new ID; draws the next sequence number unless one is given."""
        if sequence is None:
            sequence = self.counter.increment()
        return f"{sequence}-{to_base36(self._rng.getrandbits(63))}"


def create_request_id_generator(counter: RequestCounter | None = None) -> RequestIdGenerator:
    return RequestIdGenerator(counter or RequestCounter())
