"""Low-level SQLite helpers: opening, pragmas, transactions, row conversion."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Final

from chat_memory.constants import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_SYNCHRONOUS, SYNCHRONOUS_MODES
from chat_memory.persistence.errors import MemoryDBIOError, translate_sqlite_error

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

_SAVEPOINT_PREFIX: Final[str] = "sp_"
_savepoint_lock = threading.Lock()
_savepoint_counter = 0


def open_connection(
    path: Path,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    synchronous: str = DEFAULT_SYNCHRONOUS,
) -> sqlite3.Connection:
    """Open ``path`` read/write/create in autocommit mode, without configuring it."""

    if busy_timeout_ms < 0:
        raise ValueError("busy_timeout_ms must be >= 0")
    if synchronous.upper() not in SYNCHRONOUS_MODES:
        raise ValueError(f"unsupported synchronous mode {synchronous!r}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise MemoryDBIOError(f"cannot create directory for {path}: {exc}") from exc
    try:
        conn = sqlite3.connect(
            path,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        translate_sqlite_error(exc, operation="open memory db", path=path)
    conn.row_factory = sqlite3.Row
    return conn


def configure_connection(
    conn: sqlite3.Connection,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    synchronous: str = DEFAULT_SYNCHRONOUS,
) -> None:
    """Apply busy timeout, WAL journaling, synchronous level and FK enforcement.

    Raises ``sqlite3.Error`` unchanged so the caller can tell a corrupt file
    apart from other failures.
    """

    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
    if journal_row is None:
        raise MemoryDBIOError("failed to configure journal_mode")
    journal_mode = str(journal_row[0]).lower()
    if journal_mode != "wal":
        raise MemoryDBIOError(f"journal_mode must be WAL, got {journal_mode!r}")
    conn.execute(f"PRAGMA synchronous={synchronous.upper()}")
    conn.execute("PRAGMA foreign_keys=ON")


def _next_savepoint_name() -> str:
    global _savepoint_counter
    with _savepoint_lock:
        _savepoint_counter += 1
        return f"{_SAVEPOINT_PREFIX}{_savepoint_counter}"


@contextmanager
def transaction(
    conn: sqlite3.Connection, *, immediate: bool = True
) -> Iterator[sqlite3.Connection]:
    """Run statements atomically; nested calls become savepoints."""

    if conn.in_transaction:
        savepoint = _next_savepoint_name()
        conn.execute(f"SAVEPOINT {savepoint}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
            conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        return

    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


def canonical_json(value: object) -> str:
    """Compact JSON for stored payloads; key order is preserved as supplied."""

    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


__all__ = [
    "RowValue",
    "SQLParams",
    "SQLValue",
    "canonical_json",
    "configure_connection",
    "open_connection",
    "row_to_dict",
    "transaction",
]
