"""
Connection lifecycle for per-scope memory databases.

Two interchangeable strategies implement :class:`ConnectionProvider`:

- :class:`PooledConnectionProvider` keeps one slot per scope key in a registry.
  The registry lock only guards finding or inserting a slot; opening,
  preparing and using the handle happen under the slot's own lock, so a slow
  open on one scope never delays calls on another.
- :class:`EphemeralConnectionProvider` opens, prepares and closes a handle on
  every call, for hosts that penalize long-lived file descriptors.

Both run the same open sequence (:func:`open_prepared_connection`): pragmas,
integrity check for pre-existing files, then schema creation or migration.
The strategy is picked once via :func:`create_connection_provider`.
"""

from __future__ import annotations

import logging
import sqlite3
import sys
import threading
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from chat_memory.constants import (
    CONNECTION_STRATEGIES,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_SYNCHRONOUS,
    MEMORY_DB_SCHEMA_VERSION,
)
from chat_memory.ids import Clock
from chat_memory.persistence.errors import is_corruption_error, translate_sqlite_error
from chat_memory.persistence.integrity import (
    backup_database,
    ensure_db_health,
    raise_integrity_failure,
)
from chat_memory.persistence.schema import MIGRATIONS, Migration, ensure_schema
from chat_memory.persistence.scope import db_path_for
from chat_memory.persistence.sqlite_helpers import configure_connection, open_connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionOptions:
    """Everything needed to open and prepare one database file."""

    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    synchronous: str = DEFAULT_SYNCHRONOUS
    target_version: int = MEMORY_DB_SCHEMA_VERSION
    migrations: Sequence[Migration] = MIGRATIONS
    clock: Clock | None = field(default=None, compare=False)


def open_prepared_connection(path: Path, options: ConnectionOptions) -> sqlite3.Connection:
    """Open ``path`` and run integrity and schema checks exactly once."""

    existed = path.exists()
    conn = open_connection(
        path,
        busy_timeout_ms=options.busy_timeout_ms,
        synchronous=options.synchronous,
    )
    try:
        configure_connection(
            conn,
            busy_timeout_ms=options.busy_timeout_ms,
            synchronous=options.synchronous,
        )
        if existed:
            ensure_db_health(conn, path, clock=options.clock)
        version = ensure_schema(
            conn,
            path,
            existed=existed,
            backup=lambda target, label: backup_database(target, label, clock=options.clock),
            target_version=options.target_version,
            migrations=options.migrations,
        )
    except sqlite3.Error as exc:
        conn.close()
        if existed and is_corruption_error(exc):
            raise_integrity_failure(path, (str(exc),), clock=options.clock, cause=exc)
        translate_sqlite_error(exc, operation="open memory db", path=path)
    except BaseException:
        conn.close()
        raise
    logger.debug(
        "memory db opened",
        extra={"db_path": str(path), "existed": existed, "schema_version": version},
    )
    return conn


class ConnectionProvider(Protocol):
    """Yields a ready connection for a database path and releases it after use."""

    base_dir: Path

    def connection(self, scope_key: str) -> AbstractContextManager[sqlite3.Connection]: ...

    def discard(self, scope_key: str) -> None: ...

    def close_all(self) -> None: ...


@dataclass(slots=True, eq=False)
class _PoolSlot:
    lock: threading.RLock = field(default_factory=threading.RLock)
    conn: sqlite3.Connection | None = None
    retired: bool = False


class PooledConnectionProvider:
    """Caches one open handle per scope key."""

    strategy = "pooled"

    def __init__(self, base_dir: Path, options: ConnectionOptions | None = None) -> None:
        self.base_dir = Path(base_dir)
        self._options = options or ConnectionOptions()
        self._registry: dict[str, _PoolSlot] = {}
        self._registry_lock = threading.Lock()

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    def cached_scopes(self) -> tuple[str, ...]:
        with self._registry_lock:
            ready = [key for key, slot in self._registry.items() if slot.conn is not None]
        return tuple(sorted(ready))

    def _slot(self, scope_key: str) -> _PoolSlot:
        with self._registry_lock:
            slot = self._registry.get(scope_key)
            if slot is None:
                slot = self._registry[scope_key] = _PoolSlot()
            return slot

    def _forget(self, scope_key: str, slot: _PoolSlot) -> None:
        with self._registry_lock:
            if self._registry.get(scope_key) is slot:
                del self._registry[scope_key]

    @contextmanager
    def connection(self, scope_key: str) -> Iterator[sqlite3.Connection]:
        # Opening happens under the slot lock only; the registry lock is never
        # held across I/O.
        while True:
            slot = self._slot(scope_key)
            with slot.lock:
                if slot.retired:
                    continue
                if slot.conn is None:
                    path = db_path_for(self.base_dir, scope_key)
                    try:
                        slot.conn = open_prepared_connection(path, self._options)
                    except BaseException:
                        slot.retired = True
                        self._forget(scope_key, slot)
                        raise
                yield slot.conn
                return

    def discard(self, scope_key: str) -> None:
        """Close and forget the cached handle for ``scope_key``, if any."""
        with self._registry_lock:
            slot = self._registry.pop(scope_key, None)
        if slot is not None:
            self._retire(scope_key, slot)

    def close_all(self) -> None:
        with self._registry_lock:
            slots = list(self._registry.items())
            self._registry.clear()
        for scope_key, slot in slots:
            self._retire(scope_key, slot)

    def _retire(self, scope_key: str, slot: _PoolSlot) -> None:
        with slot.lock:
            slot.retired = True
            if slot.conn is None:
                return
            slot.conn.close()
            slot.conn = None
        logger.debug("memory db connection closed", extra={"scope_key": scope_key})


class EphemeralConnectionProvider:
    """Opens and fully closes a handle around every call."""

    strategy = "ephemeral"

    def __init__(self, base_dir: Path, options: ConnectionOptions | None = None) -> None:
        self.base_dir = Path(base_dir)
        self._options = options or ConnectionOptions()

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    @contextmanager
    def connection(self, scope_key: str) -> Iterator[sqlite3.Connection]:
        conn = open_prepared_connection(db_path_for(self.base_dir, scope_key), self._options)
        try:
            yield conn
        finally:
            conn.close()

    def discard(self, scope_key: str) -> None:
        """Nothing is cached."""

    def close_all(self) -> None:
        """Nothing is cached."""


def supports_persistent_handles() -> bool:
    """``False`` on mobile hosts that restrict long-lived file descriptors."""

    if hasattr(sys, "getandroidapilevel"):
        return False
    return sys.platform not in {"android", "ios"}


def create_connection_provider(
    base_dir: Path,
    strategy: str = "auto",
    options: ConnectionOptions | None = None,
) -> PooledConnectionProvider | EphemeralConnectionProvider:
    """Resolve ``strategy`` once and build the matching provider."""

    normalized = strategy.strip().lower()
    if normalized not in CONNECTION_STRATEGIES:
        allowed = ", ".join(CONNECTION_STRATEGIES)
        raise ValueError(f"connection strategy must be one of: {allowed}; got {strategy!r}")
    if normalized == "auto":
        normalized = "pooled" if supports_persistent_handles() else "ephemeral"
    if normalized == "pooled":
        return PooledConnectionProvider(base_dir, options)
    return EphemeralConnectionProvider(base_dir, options)


__all__ = [
    "ConnectionOptions",
    "ConnectionProvider",
    "EphemeralConnectionProvider",
    "PooledConnectionProvider",
    "create_connection_provider",
    "open_prepared_connection",
    "supports_persistent_handles",
]
