"""Memory id generation with an explicitly owned sequence counter."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from chat_memory.constants import MEMORY_ID_COUNTER_MODULUS, MEMORY_ID_PREFIX

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


class MemoryIdGenerator:
    """Generate ``mem_<timestamp_ms>_<seq>`` ids.

    ``seq`` comes from a per-instance counter wrapped at 1000, so ids created
    within the same millisecond stay distinct for up to 1000 calls. Tests
    inject ``clock`` and ``start`` to get deterministic output.
    """

    __slots__ = ("_clock", "_counter", "_lock")

    def __init__(self, *, clock: Clock | None = None, start: int = 0) -> None:
        if start < 0:
            raise ValueError("start must be >= 0")
        self._clock = clock or now_ms
        self._counter = start
        self._lock = threading.Lock()

    def next_sequence(self) -> int:
        with self._lock:
            value = self._counter
            self._counter += 1
        return value % MEMORY_ID_COUNTER_MODULUS

    def __call__(self) -> str:
        return f"{MEMORY_ID_PREFIX}_{self._clock()}_{self.next_sequence()}"


__all__ = ["Clock", "MemoryIdGenerator", "now_ms"]
