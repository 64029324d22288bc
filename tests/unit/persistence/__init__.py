"""Shared deterministic clocks and builders for persistence tests."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Final

from chat_memory.ids import MemoryIdGenerator
from chat_memory.persistence import (
    ConnectionOptions,
    EphemeralConnectionProvider,
    MemoryCreateInput,
    MemoryDB,
    PooledConnectionProvider,
    TemplateInput,
)

if TYPE_CHECKING:
    from pathlib import Path

BASE_MS: Final[int] = 1_760_000_000_000


class ManualClock:
    """Millisecond clock that only moves when a test says so."""

    def __init__(self, now: int = BASE_MS) -> None:
        self.now = now

    def advance(self, delta_ms: int = 1) -> int:
        self.now += delta_ms
        return self.now

    def __call__(self) -> int:
        return self.now


class SteppingClock:
    """Thread-safe clock that advances by ``step`` on every read."""

    def __init__(self, start: int = BASE_MS, step: int = 1) -> None:
        self._value = start
        self._step = step
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            current = self._value
            self._value += self._step
            return current


def make_db(
    base_dir: Path,
    *,
    strategy: str = "pooled",
    clock: ManualClock | SteppingClock | None = None,
) -> MemoryDB:
    options = ConnectionOptions(clock=clock)
    provider: PooledConnectionProvider | EphemeralConnectionProvider
    if strategy == "pooled":
        provider = PooledConnectionProvider(base_dir, options)
    else:
        provider = EphemeralConnectionProvider(base_dir, options)
    id_generator = MemoryIdGenerator(clock=clock) if clock is not None else None
    return MemoryDB(base_dir, provider=provider, id_generator=id_generator, clock=clock)


def make_memory(
    seed: int,
    *,
    memory_id: str | None = None,
    template_id: str = "tpl-profile",
    table_id: str = "facts",
    contact_id: str | None = None,
    group_id: str | None = None,
    is_pinned: bool | None = None,
    priority: int | None = None,
) -> MemoryCreateInput:
    return MemoryCreateInput(
        id=memory_id,
        template_id=template_id,
        table_id=table_id,
        contact_id=contact_id,
        group_id=group_id,
        row_data={"seed": seed, "fields": {"note": f"note-{seed}", "tags": ["a", "b"]}},
        is_pinned=is_pinned,
        priority=priority,
    )


def make_template(
    seed: int,
    *,
    template_id: str | None = None,
    is_default: bool | None = None,
    is_builtin: bool | None = None,
    injection: object = None,
) -> TemplateInput:
    return TemplateInput(
        id=template_id or f"tpl-{seed}",
        name=f"Template {seed}",
        author="tests",
        version="1.0",
        description=f"template number {seed}",
        schema={"tables": [{"id": "facts", "columns": ["note", "tags"]}]},
        injection=injection,
        is_default=is_default,
        is_builtin=is_builtin,
    )
