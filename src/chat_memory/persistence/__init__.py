"""Persistence layer: scoped SQLite databases, schema, integrity and repositories."""

from chat_memory.persistence.connection import (
    ConnectionOptions,
    ConnectionProvider,
    EphemeralConnectionProvider,
    PooledConnectionProvider,
    create_connection_provider,
    supports_persistent_handles,
)
from chat_memory.persistence.errors import (
    IntegrityFailureError,
    InvalidInputError,
    MemoryDBBusyError,
    MemoryDBError,
    MemoryDBIOError,
    MigrationPathMissingError,
    NotFoundError,
    SchemaIncompatibleError,
    SerializationError,
)
from chat_memory.persistence.memory_db import MemoryDB
from chat_memory.persistence.records import (
    MemoryCreateInput,
    MemoryQuery,
    MemoryRecord,
    MemoryUpdateInput,
    QueryScope,
    TemplateInput,
    TemplateQuery,
    TemplateRecord,
)
from chat_memory.persistence.schema import MIGRATIONS, Migration
from chat_memory.persistence.scope import db_path_for, normalize_scope_id

__all__ = [
    "ConnectionOptions",
    "ConnectionProvider",
    "EphemeralConnectionProvider",
    "IntegrityFailureError",
    "InvalidInputError",
    "MIGRATIONS",
    "MemoryCreateInput",
    "MemoryDB",
    "MemoryDBBusyError",
    "MemoryDBError",
    "MemoryDBIOError",
    "MemoryQuery",
    "MemoryRecord",
    "MemoryUpdateInput",
    "Migration",
    "MigrationPathMissingError",
    "NotFoundError",
    "PooledConnectionProvider",
    "QueryScope",
    "SchemaIncompatibleError",
    "SerializationError",
    "TemplateInput",
    "TemplateQuery",
    "TemplateRecord",
    "create_connection_provider",
    "db_path_for",
    "normalize_scope_id",
    "supports_persistent_handles",
]
