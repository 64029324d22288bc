"""Consistency checks and file-copy backups for memory databases."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path
from typing import NoReturn

from chat_memory.constants import BACKUP_SUFFIX, CORRUPT_BACKUP_LABEL
from chat_memory.ids import Clock, now_ms
from chat_memory.persistence.errors import (
    IntegrityFailureError,
    MemoryDBIOError,
    is_corruption_error,
    translate_sqlite_error,
)

logger = logging.getLogger(__name__)


def quick_check(conn: sqlite3.Connection) -> tuple[str, ...]:
    """Return ``PRAGMA quick_check`` diagnostics; an empty tuple means OK."""

    rows = conn.execute("PRAGMA quick_check").fetchall()
    messages = tuple(str(row[0]) for row in rows)
    if all(message.strip().lower() == "ok" for message in messages):
        return ()
    return messages


def backup_path_for(path: Path, label: str, stamp_ms: int) -> Path:
    return path.with_name(f"{path.name}.{label}.{stamp_ms}{BACKUP_SUFFIX}")


def backup_database(path: Path, label: str, *, clock: Clock | None = None) -> Path:
    """Copy ``path`` to ``<name>.<label>.<timestamp_ms>.bak`` beside it."""

    if not label or "/" in label or "\\" in label:
        raise ValueError(f"invalid backup label {label!r}")
    stamp = (clock or now_ms)()
    destination = backup_path_for(path, label, stamp)
    try:
        shutil.copy2(path, destination)
    except OSError as exc:
        raise MemoryDBIOError(f"failed to back up {path} to {destination}: {exc}") from exc
    logger.warning(
        "memory db backup written",
        extra={"db_path": str(path), "backup_path": str(destination), "label": label},
    )
    return destination


def ensure_db_health(
    conn: sqlite3.Connection,
    path: Path,
    *,
    clock: Clock | None = None,
) -> None:
    """Run a quick check; on failure back the file up and raise ``IntegrityFailureError``."""

    try:
        diagnostics = quick_check(conn)
    except sqlite3.Error as exc:
        # quick_check itself can trip over a damaged page.
        if not is_corruption_error(exc):
            translate_sqlite_error(exc, operation="quick_check", path=path)
        diagnostics = (str(exc),)
    if not diagnostics:
        return
    raise_integrity_failure(path, diagnostics, clock=clock)


def raise_integrity_failure(
    path: Path,
    diagnostics: tuple[str, ...],
    *,
    clock: Clock | None = None,
    cause: BaseException | None = None,
) -> NoReturn:
    """Log the failure, write a ``corrupt`` backup, then raise ``IntegrityFailureError``."""
    logger.error(
        "memory db integrity check failed",
        extra={"db_path": str(path), "diagnostics": list(diagnostics)},
    )
    backup = backup_database(path, CORRUPT_BACKUP_LABEL, clock=clock)
    raise IntegrityFailureError(path, diagnostics, backup_path=backup) from cause


def check_database(conn: sqlite3.Connection, path: Path) -> tuple[str, ...]:
    """Read-only diagnostics for inspection commands; never writes a backup."""

    try:
        return quick_check(conn)
    except sqlite3.Error as exc:
        if is_corruption_error(exc):
            return (str(exc),)
        translate_sqlite_error(exc, operation="quick_check", path=path)


__all__ = [
    "backup_database",
    "backup_path_for",
    "check_database",
    "ensure_db_health",
    "quick_check",
    "raise_integrity_failure",
]
