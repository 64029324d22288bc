"""Stable constants shared across the memory store."""

from __future__ import annotations

from typing import Final

# Schema version for per-scope memory databases.
MEMORY_DB_SCHEMA_VERSION: Final[int] = 1
SCHEMA_VERSION_KEY: Final[str] = "schema_version"

# On-disk layout.
DEFAULT_DB_FILENAME: Final[str] = "memories.db"
SCOPED_DB_PREFIX: Final[str] = "memories__"
DB_SUFFIX: Final[str] = ".db"
BACKUP_SUFFIX: Final[str] = ".bak"

# Backup labels.
CORRUPT_BACKUP_LABEL: Final[str] = "corrupt"
PRE_MIGRATE_BACKUP_LABEL: Final[str] = "pre_migrate"

# Scope keys.
MAX_SCOPE_KEY_LENGTH: Final[int] = 80

# Connection tuning.
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_SYNCHRONOUS: Final[str] = "NORMAL"
SYNCHRONOUS_MODES: Final[tuple[str, ...]] = ("OFF", "NORMAL", "FULL", "EXTRA")
CONNECTION_STRATEGIES: Final[tuple[str, ...]] = ("auto", "pooled", "ephemeral")

# Memory id generation.
MEMORY_ID_PREFIX: Final[str] = "mem"
MEMORY_ID_COUNTER_MODULUS: Final[int] = 1_000

__all__ = [
    "BACKUP_SUFFIX",
    "CONNECTION_STRATEGIES",
    "CORRUPT_BACKUP_LABEL",
    "DB_SUFFIX",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_DB_FILENAME",
    "DEFAULT_SYNCHRONOUS",
    "MAX_SCOPE_KEY_LENGTH",
    "MEMORY_DB_SCHEMA_VERSION",
    "MEMORY_ID_COUNTER_MODULUS",
    "MEMORY_ID_PREFIX",
    "PRE_MIGRATE_BACKUP_LABEL",
    "SCHEMA_VERSION_KEY",
    "SCOPED_DB_PREFIX",
    "SYNCHRONOUS_MODES",
]
