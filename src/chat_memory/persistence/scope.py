"""Scope id normalization and per-scope database file mapping."""

from __future__ import annotations

from pathlib import Path

from chat_memory.constants import (
    BACKUP_SUFFIX,
    DB_SUFFIX,
    DEFAULT_DB_FILENAME,
    MAX_SCOPE_KEY_LENGTH,
    SCOPED_DB_PREFIX,
)


def _is_allowed_char(ch: str) -> bool:
    return ch.isascii() and (ch.isalnum() or ch in "-_.")


def normalize_scope_id(scope_id: str | None) -> str:
    """Map an optional raw scope id to its normalized key.

    Characters outside ``[A-Za-z0-9._-]`` become ``_``, the result is cut to
    80 characters and stripped of leading/trailing underscores. Two raw ids
    that normalize identically address the same database.
    """

    if scope_id is None:
        return ""
    if not isinstance(scope_id, str):
        raise TypeError(f"scope_id must be a string or None, got {type(scope_id).__name__}")
    trimmed = scope_id.strip()
    if not trimmed:
        return ""
    replaced = "".join(ch if _is_allowed_char(ch) else "_" for ch in trimmed)
    return replaced[:MAX_SCOPE_KEY_LENGTH].strip("_")


def db_filename_for(scope_key: str) -> str:
    if not scope_key:
        return DEFAULT_DB_FILENAME
    return f"{SCOPED_DB_PREFIX}{scope_key}{DB_SUFFIX}"


def db_path_for(base_dir: Path, scope_key: str) -> Path:
    return base_dir / db_filename_for(scope_key)


def scope_key_from_path(path: Path) -> str | None:
    """Return the scope key a database file belongs to, or ``None`` for other files."""

    name = path.name
    if name.endswith(BACKUP_SUFFIX):
        return None
    if name == DEFAULT_DB_FILENAME:
        return ""
    if not (name.startswith(SCOPED_DB_PREFIX) and name.endswith(DB_SUFFIX)):
        return None
    key = name[len(SCOPED_DB_PREFIX) : -len(DB_SUFFIX)]
    if not key or normalize_scope_id(key) != key:
        return None
    return key


__all__ = [
    "db_filename_for",
    "db_path_for",
    "normalize_scope_id",
    "scope_key_from_path",
]
