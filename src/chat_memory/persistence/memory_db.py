"""
Scoped memory store facade.

``MemoryDB`` is the only entry point hosts need: every operation takes an
optional raw scope id, resolves it to a database file, borrows a prepared
connection from the configured provider and runs one repository call on it.
Raw ``sqlite3.Error`` never leaves this module; it is translated into the
``MemoryDBError`` hierarchy with the original exception chained.

Async hosts use the ``*_async`` twins, which run the same call on a worker
thread via :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Final, TypeVar

from chat_memory.config.schema import StorageSettings
from chat_memory.ids import Clock, MemoryIdGenerator, now_ms
from chat_memory.observability.logging import correlation_scope
from chat_memory.persistence.connection import (
    ConnectionOptions,
    ConnectionProvider,
    create_connection_provider,
)
from chat_memory.persistence.errors import (
    InvalidInputError,
    is_corruption_error,
    translate_sqlite_error,
)
from chat_memory.persistence.integrity import check_database, raise_integrity_failure
from chat_memory.persistence.records import (
    MemoryCreateInput,
    MemoryQuery,
    MemoryRecord,
    MemoryUpdateInput,
    TemplateInput,
    TemplateQuery,
    TemplateRecord,
    coerce_input,
)
from chat_memory.persistence.repositories import MemoryRepo, TemplateRepo
from chat_memory.persistence.schema import read_schema_version
from chat_memory.persistence.scope import db_path_for, normalize_scope_id, scope_key_from_path

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_DEFAULT_SCOPE_LABEL: Final[str] = "(default)"

MemoryCreatePayload = MemoryCreateInput | Mapping[str, object]
MemoryUpdatePayload = MemoryUpdateInput | Mapping[str, object]
MemoryQueryPayload = MemoryQuery | Mapping[str, object] | None
TemplatePayload = TemplateInput | Mapping[str, object]
TemplateQueryPayload = TemplateQuery | Mapping[str, object] | None


class MemoryDB:
    """Per-scope SQLite memory store.

    Parameters
    ----------
    base_dir:
        Directory holding ``memories.db`` and ``memories__<scope>.db`` files.
    provider:
        Connection strategy. Built from ``settings`` when omitted.
    id_generator:
        Source of memory ids for rows created without one.
    clock:
        Millisecond clock for timestamps and backup names.
    settings:
        Storage tuning (strategy, busy timeout, synchronous level).
    """

    def __init__(
        self,
        base_dir: str | Path,
        *,
        provider: ConnectionProvider | None = None,
        id_generator: MemoryIdGenerator | None = None,
        clock: Clock | None = None,
        settings: StorageSettings | None = None,
    ) -> None:
        self._base_dir = Path(base_dir)
        self._clock = clock or now_ms
        self._id_generator = id_generator or MemoryIdGenerator(clock=self._clock)
        if provider is None:
            resolved = settings or StorageSettings(base_dir=self._base_dir)
            provider = create_connection_provider(
                self._base_dir,
                resolved.connection_strategy,
                ConnectionOptions(
                    busy_timeout_ms=resolved.busy_timeout_ms,
                    synchronous=resolved.synchronous,
                    clock=clock,
                ),
            )
        elif Path(provider.base_dir) != self._base_dir:
            raise ValueError(
                f"provider base_dir {provider.base_dir} does not match {self._base_dir}"
            )
        self._provider = provider

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        *,
        id_generator: MemoryIdGenerator | None = None,
        clock: Clock | None = None,
    ) -> MemoryDB:
        """Build a store from a loaded ``chat_memory.toml`` mapping."""

        settings = StorageSettings.from_config(config)
        return cls(settings.base_dir, id_generator=id_generator, clock=clock, settings=settings)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def provider(self) -> ConnectionProvider:
        return self._provider

    def __enter__(self) -> MemoryDB:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close_all()

    def init(self, scope_id: str | None = None) -> None:
        """Create or open the scope's database, migrating and checking it."""
        self._run(scope_id, "init", lambda conn: None)

    def close_all(self) -> None:
        """Release every cached handle. Call before touching the data directory."""
        self._provider.close_all()
        logger.debug("memory db pool closed", extra={"base_dir": str(self._base_dir)})

    def db_path(self, scope_id: str | None = None) -> Path:
        return db_path_for(self._base_dir, _scope_key(scope_id))

    def list_scopes(self) -> list[str]:
        """Scope keys that currently have a database file; ``""`` is the default scope."""

        if not self._base_dir.is_dir():
            return []
        keys: set[str] = set()
        for candidate in self._base_dir.iterdir():
            if not candidate.is_file():
                continue
            key = scope_key_from_path(candidate)
            if key is not None:
                keys.add(key)
        return sorted(keys)

    def schema_version(self, scope_id: str | None = None) -> int:
        return self._run(scope_id, "schema_version", read_schema_version)

    def integrity_check(self, scope_id: str | None = None) -> tuple[str, ...]:
        """Run ``PRAGMA quick_check`` without writing a backup; empty means healthy."""
        path = self.db_path(scope_id)
        return self._run(scope_id, "integrity_check", lambda conn: check_database(conn, path))

    def create_memory(self, scope_id: str | None, payload: MemoryCreatePayload) -> str:
        item = coerce_input(payload, MemoryCreateInput)
        return self._run(
            scope_id,
            "create_memory",
            lambda conn: self._memories(conn).create(item),
            template_id=item.template_id,
        )

    def update_memory(self, scope_id: str | None, payload: MemoryUpdatePayload) -> None:
        update = coerce_input(payload, MemoryUpdateInput)
        self._run(
            scope_id,
            "update_memory",
            lambda conn: self._memories(conn).update(update),
            memory_id=update.id,
        )

    def delete_memory(self, scope_id: str | None, memory_id: str) -> None:
        _require_id(memory_id, "memory_id")
        self._run(
            scope_id,
            "delete_memory",
            lambda conn: self._memories(conn).delete(memory_id),
            memory_id=memory_id,
        )

    def query_memories(
        self, scope_id: str | None, filters: MemoryQueryPayload = None
    ) -> list[MemoryRecord]:
        query = MemoryQuery() if filters is None else coerce_input(filters, MemoryQuery)
        return self._run(
            scope_id,
            "query_memories",
            lambda conn: self._memories(conn).query(query),
            template_id=query.template_id,
        )

    def batch_create_memories(
        self, scope_id: str | None, payloads: Iterable[MemoryCreatePayload]
    ) -> int:
        items = [coerce_input(item, MemoryCreateInput) for item in payloads]
        return self._run(
            scope_id,
            "batch_create_memories",
            lambda conn: self._memories(conn).batch_create(items),
        )

    def batch_delete_memories(self, scope_id: str | None, memory_ids: Sequence[str]) -> int:
        return self._run(
            scope_id,
            "batch_delete_memories",
            lambda conn: self._memories(conn).batch_delete(memory_ids),
        )

    def save_template(self, scope_id: str | None, payload: TemplatePayload) -> None:
        template = coerce_input(payload, TemplateInput)
        self._run(
            scope_id,
            "save_template",
            lambda conn: TemplateRepo(conn, clock=self._clock).save(template),
            template_id=template.id,
        )

    def query_templates(
        self, scope_id: str | None, filters: TemplateQueryPayload = None
    ) -> list[TemplateRecord]:
        query = TemplateQuery() if filters is None else coerce_input(filters, TemplateQuery)
        return self._run(
            scope_id,
            "query_templates",
            lambda conn: TemplateRepo(conn, clock=self._clock).query(query),
            template_id=query.id,
        )

    def delete_template(self, scope_id: str | None, template_id: str) -> None:
        _require_id(template_id, "template_id")
        self._run(
            scope_id,
            "delete_template",
            lambda conn: TemplateRepo(conn, clock=self._clock).delete(template_id),
            template_id=template_id,
        )

    async def init_async(self, scope_id: str | None = None) -> None:
        await asyncio.to_thread(self.init, scope_id)

    async def create_memory_async(self, scope_id: str | None, payload: MemoryCreatePayload) -> str:
        return await asyncio.to_thread(self.create_memory, scope_id, payload)

    async def update_memory_async(
        self, scope_id: str | None, payload: MemoryUpdatePayload
    ) -> None:
        await asyncio.to_thread(self.update_memory, scope_id, payload)

    async def delete_memory_async(self, scope_id: str | None, memory_id: str) -> None:
        await asyncio.to_thread(self.delete_memory, scope_id, memory_id)

    async def query_memories_async(
        self, scope_id: str | None, filters: MemoryQueryPayload = None
    ) -> list[MemoryRecord]:
        return await asyncio.to_thread(self.query_memories, scope_id, filters)

    async def batch_create_memories_async(
        self, scope_id: str | None, payloads: Iterable[MemoryCreatePayload]
    ) -> int:
        return await asyncio.to_thread(self.batch_create_memories, scope_id, list(payloads))

    async def batch_delete_memories_async(
        self, scope_id: str | None, memory_ids: Sequence[str]
    ) -> int:
        return await asyncio.to_thread(self.batch_delete_memories, scope_id, memory_ids)

    async def save_template_async(self, scope_id: str | None, payload: TemplatePayload) -> None:
        await asyncio.to_thread(self.save_template, scope_id, payload)

    async def query_templates_async(
        self, scope_id: str | None, filters: TemplateQueryPayload = None
    ) -> list[TemplateRecord]:
        return await asyncio.to_thread(self.query_templates, scope_id, filters)

    async def delete_template_async(self, scope_id: str | None, template_id: str) -> None:
        await asyncio.to_thread(self.delete_template, scope_id, template_id)

    async def close_all_async(self) -> None:
        await asyncio.to_thread(self.close_all)

    def _memories(self, conn: sqlite3.Connection) -> MemoryRepo:
        return MemoryRepo(conn, id_generator=self._id_generator, clock=self._clock)

    def _run(
        self,
        scope_id: str | None,
        operation: str,
        call: Callable[[sqlite3.Connection], _T],
        **correlation: str | None,
    ) -> _T:
        scope_key = _scope_key(scope_id)
        fields = {key: _correlation_value(value) for key, value in correlation.items()}
        with correlation_scope(
            scope_key=scope_key or _DEFAULT_SCOPE_LABEL,
            operation=operation,
            **fields,
        ):
            try:
                with self._provider.connection(scope_key) as conn:
                    return call(conn)
            except sqlite3.Error as exc:
                path = db_path_for(self._base_dir, scope_key)
                if is_corruption_error(exc):
                    # Close the cached handle before copying the file.
                    self._provider.discard(scope_key)
                    raise_integrity_failure(path, (str(exc),), clock=self._clock, cause=exc)
                translate_sqlite_error(exc, operation=operation, path=path)


def _scope_key(scope_id: str | None) -> str:
    try:
        return normalize_scope_id(scope_id)
    except TypeError as exc:
        raise InvalidInputError(str(exc)) from exc


def _require_id(value: object, name: str) -> None:
    if not isinstance(value, str):
        raise InvalidInputError(f"{name}: expected string, got {type(value).__name__}")


def _correlation_value(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


__all__ = ["MemoryDB"]
