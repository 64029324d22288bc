"""
Schema creation and version migrations for per-scope memory databases.

Each database carries a ``schema_info`` key/value table whose
``schema_version`` row records the applied version as a string-encoded
integer. A fresh file receives the baseline script and the target version in
one transaction. An older file walks the migration chain one step at a time,
each step in its own transaction; a newer file is refused.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from chat_memory.constants import (
    MEMORY_DB_SCHEMA_VERSION,
    PRE_MIGRATE_BACKUP_LABEL,
    SCHEMA_VERSION_KEY,
)
from chat_memory.persistence.errors import MigrationPathMissingError, SchemaIncompatibleError
from chat_memory.persistence.sqlite_helpers import transaction

logger = logging.getLogger(__name__)

BackupHook = Callable[[Path, str], Path]

SCHEMA_INFO_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_info (
    key TEXT PRIMARY KEY,
    value TEXT
)
"""

# template_id is a reference by convention only; templates can be deleted
# without touching the memories that name them.
BASELINE_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS templates (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        author TEXT,
        version TEXT,
        description TEXT,
        schema TEXT NOT NULL,
        injection TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        is_default INTEGER NOT NULL DEFAULT 0 CHECK (is_default IN (0, 1)),
        is_builtin INTEGER NOT NULL DEFAULT 0 CHECK (is_builtin IN (0, 1))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        template_id TEXT NOT NULL,
        table_id TEXT NOT NULL,
        contact_id TEXT,
        group_id TEXT,
        row_data TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
        is_pinned INTEGER NOT NULL DEFAULT 0 CHECK (is_pinned IN (0, 1)),
        priority INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_contact ON memories(contact_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_group ON memories(group_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_template_table ON memories(template_id, table_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_memories_relevance
    ON memories(is_pinned DESC, priority DESC, updated_at DESC)
    """,
    "CREATE INDEX IF NOT EXISTS idx_templates_updated ON templates(updated_at DESC)",
)


@dataclass(frozen=True, slots=True)
class Migration:
    """One step of the migration chain, applied atomically with its version bump."""

    from_version: int
    to_version: int
    name: str
    statements: tuple[str, ...]


# Empty until the first schema change ships after version 1.
MIGRATIONS: Final[tuple[Migration, ...]] = ()


def validate_migration_chain(
    target_version: int,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> None:
    """Require exactly one single-step edge out of every version in ``[1, target)``."""

    if target_version < 1:
        raise MigrationPathMissingError(f"target schema version must be >= 1, got {target_version}")
    outgoing: dict[int, list[Migration]] = {}
    for migration in migrations:
        if migration.to_version != migration.from_version + 1:
            raise MigrationPathMissingError(
                f"migration {migration.name!r} must advance exactly one version "
                f"({migration.from_version} -> {migration.to_version})"
            )
        if migration.to_version > target_version:
            raise MigrationPathMissingError(
                f"migration {migration.name!r} targets version {migration.to_version} "
                f"beyond supported version {target_version}"
            )
        outgoing.setdefault(migration.from_version, []).append(migration)
    for version in range(1, target_version):
        edges = outgoing.get(version, [])
        if not edges:
            raise MigrationPathMissingError(
                f"missing migration path: {version} -> {version + 1}"
            )
        if len(edges) > 1:
            names = ", ".join(sorted(edge.name for edge in edges))
            raise MigrationPathMissingError(
                f"ambiguous migration path from version {version}: {names}"
            )


def read_schema_version(conn: sqlite3.Connection) -> int:
    """Return the stored version; a missing table, row or unparsable value reads as 0."""

    table = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_info'"
    ).fetchone()
    if table is None:
        return 0
    row = conn.execute(
        "SELECT value FROM schema_info WHERE key = ?",
        (SCHEMA_VERSION_KEY,),
    ).fetchone()
    if row is None or row[0] is None:
        return 0
    try:
        return int(str(row[0]).strip())
    except ValueError:
        return 0


def _write_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO schema_info (key, value) VALUES (?, ?)",
        (SCHEMA_VERSION_KEY, str(version)),
    )


def ensure_schema(
    conn: sqlite3.Connection,
    path: Path,
    *,
    existed: bool,
    backup: BackupHook,
    target_version: int = MEMORY_DB_SCHEMA_VERSION,
    migrations: Sequence[Migration] = MIGRATIONS,
    baseline: Sequence[str] = BASELINE_STATEMENTS,
) -> int:
    """Bring the database at ``path`` to ``target_version`` and return it."""

    validate_migration_chain(target_version, migrations)

    current_version = read_schema_version(conn)
    if current_version > target_version:
        raise SchemaIncompatibleError(current_version, target_version)

    if current_version == 0:
        with transaction(conn) as tx:
            tx.execute(SCHEMA_INFO_TABLE_SQL)
            for statement in baseline:
                tx.execute(statement)
            _write_schema_version(tx, target_version)
        logger.info(
            "memory db schema created",
            extra={"db_path": str(path), "schema_version": target_version},
        )
        return target_version

    if current_version < target_version:
        _run_migrations(
            conn,
            path,
            current_version=current_version,
            target_version=target_version,
            migrations=migrations,
            existed=existed,
            backup=backup,
        )
    return target_version


def _run_migrations(
    conn: sqlite3.Connection,
    path: Path,
    *,
    current_version: int,
    target_version: int,
    migrations: Sequence[Migration],
    existed: bool,
    backup: BackupHook,
) -> None:
    by_source = {migration.from_version: migration for migration in migrations}
    if existed:
        backup(path, PRE_MIGRATE_BACKUP_LABEL)

    version = current_version
    while version < target_version:
        migration = by_source.get(version)
        if migration is None:
            raise MigrationPathMissingError(
                f"missing migration path: {version} -> {version + 1}"
            )
        with transaction(conn) as tx:
            for statement in migration.statements:
                tx.execute(statement)
            _write_schema_version(tx, migration.to_version)
        logger.info(
            "memory db migration applied",
            extra={
                "db_path": str(path),
                "migration": migration.name,
                "from_version": migration.from_version,
                "to_version": migration.to_version,
            },
        )
        version = migration.to_version


__all__ = [
    "BASELINE_STATEMENTS",
    "BackupHook",
    "MIGRATIONS",
    "Migration",
    "SCHEMA_INFO_TABLE_SQL",
    "ensure_schema",
    "read_schema_version",
    "validate_migration_chain",
]
