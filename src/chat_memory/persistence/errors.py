"""Exception hierarchy for the memory store and SQLite error translation."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Final, NoReturn

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class MemoryDBError(RuntimeError):
    """Base class for memory store errors."""


class MemoryDBIOError(MemoryDBError):
    """Raised when a database file cannot be opened, configured, read, or written."""


class MemoryDBBusyError(MemoryDBIOError):
    """Raised when write contention outlasts the busy timeout."""


class SerializationError(MemoryDBError):
    """Raised when a payload cannot be encoded as JSON."""


class SchemaIncompatibleError(MemoryDBError):
    """Raised when a database was written by a newer schema than this code supports."""

    def __init__(self, stored_version: int, supported_version: int) -> None:
        super().__init__(
            f"memory db schema too new: stored={stored_version} > supported={supported_version}"
        )
        self.stored_version = stored_version
        self.supported_version = supported_version


class MigrationPathMissingError(MemoryDBError):
    """Raised when no migration bridges a required version step."""


class IntegrityFailureError(MemoryDBError):
    """Raised when a consistency check fails; a backup copy has been written."""

    def __init__(
        self,
        path: Path,
        diagnostics: tuple[str, ...],
        *,
        backup_path: Path,
    ) -> None:
        detail = "; ".join(diagnostics) if diagnostics else "unknown failure"
        super().__init__(
            f"memory db integrity check failed for {path}: {detail} "
            f"(backup written to {backup_path})"
        )
        self.path = path
        self.diagnostics = diagnostics
        self.backup_path = backup_path


class NotFoundError(MemoryDBError):
    """Raised when an update or delete targets an id that does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidInputError(MemoryDBError, ValueError):
    """Raised when a caller omits a required filter or supplies unusable input."""


def is_busy_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def is_corruption_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)


def translate_sqlite_error(exc: sqlite3.Error, *, operation: str, path: Path) -> NoReturn:
    """Re-raise a raw ``sqlite3.Error`` as the matching ``MemoryDBError`` subclass."""

    if isinstance(exc, sqlite3.IntegrityError):
        raise InvalidInputError(f"{operation} violated a constraint in {path}: {exc}") from exc
    if is_busy_error(exc):
        raise MemoryDBBusyError(f"{operation} hit SQLITE_BUSY for {path}: {exc}") from exc
    raise MemoryDBIOError(f"{operation} failed for {path}: {exc}") from exc


__all__ = [
    "IntegrityFailureError",
    "InvalidInputError",
    "MemoryDBBusyError",
    "MemoryDBError",
    "MemoryDBIOError",
    "MigrationPathMissingError",
    "NotFoundError",
    "SchemaIncompatibleError",
    "SerializationError",
    "is_busy_error",
    "is_corruption_error",
    "translate_sqlite_error",
]
