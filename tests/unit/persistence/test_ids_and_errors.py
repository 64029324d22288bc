"""Memory id generation and SQLite error translation."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from chat_memory.ids import MemoryIdGenerator
from chat_memory.persistence.errors import (
    IntegrityFailureError,
    InvalidInputError,
    MemoryDBBusyError,
    MemoryDBError,
    MemoryDBIOError,
    NotFoundError,
    SchemaIncompatibleError,
    translate_sqlite_error,
)


def test_memory_ids_use_clock_and_wrapping_counter() -> None:
    generator = MemoryIdGenerator(clock=lambda: 1_700_000_000_123, start=998)

    assert generator() == "mem_1700000000123_998"
    assert generator() == "mem_1700000000123_999"
    assert generator() == "mem_1700000000123_0"


def test_memory_id_generator_rejects_negative_start() -> None:
    with pytest.raises(ValueError):
        MemoryIdGenerator(start=-1)


def test_memory_ids_are_unique_across_threads_within_one_millisecond() -> None:
    generator = MemoryIdGenerator(clock=lambda: 42)
    produced: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        local = [generator() for _ in range(100)]
        with lock:
            produced.extend(local)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(produced) == 800
    assert len(set(produced)) == 800


def _translated(exc: sqlite3.Error) -> MemoryDBError:
    with pytest.raises(MemoryDBError) as excinfo:
        translate_sqlite_error(exc, operation="lookup", path=Path("/tmp/memories.db"))
    assert excinfo.value.__cause__ is exc
    return excinfo.value


def test_translate_maps_constraint_violations_to_invalid_input() -> None:
    error = _translated(sqlite3.IntegrityError("UNIQUE constraint failed: memories.id"))
    assert isinstance(error, InvalidInputError)
    assert isinstance(error, ValueError)


def test_translate_maps_busy_messages_to_busy_error() -> None:
    error = _translated(sqlite3.OperationalError("database is locked"))
    assert isinstance(error, MemoryDBBusyError)
    assert isinstance(error, MemoryDBIOError)


def test_translate_never_reports_integrity_failure_without_a_backup() -> None:
    error = _translated(sqlite3.DatabaseError("database disk image is malformed"))
    assert type(error) is MemoryDBIOError
    assert not isinstance(error, IntegrityFailureError)
    assert "database disk image is malformed" in str(error)


def test_translate_maps_everything_else_to_io_error() -> None:
    error = _translated(sqlite3.OperationalError("disk I/O error"))
    assert type(error) is MemoryDBIOError
    assert "lookup failed" in str(error)


def test_error_payloads() -> None:
    schema = SchemaIncompatibleError(3, 1)
    assert schema.stored_version == 3
    assert schema.supported_version == 1
    assert "stored=3 > supported=1" in str(schema)

    missing = NotFoundError("memory", "mem_1_1")
    assert missing.entity == "memory"
    assert missing.entity_id == "mem_1_1"
    assert str(missing) == "memory not found: mem_1_1"
