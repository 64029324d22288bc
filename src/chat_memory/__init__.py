"""Scoped SQLite memory store for chat applications."""

from chat_memory.persistence import (
    MemoryCreateInput,
    MemoryDB,
    MemoryDBError,
    MemoryQuery,
    MemoryRecord,
    MemoryUpdateInput,
    TemplateInput,
    TemplateQuery,
    TemplateRecord,
)

__version__ = "0.1.0"

__all__ = [
    "MemoryCreateInput",
    "MemoryDB",
    "MemoryDBError",
    "MemoryQuery",
    "MemoryRecord",
    "MemoryUpdateInput",
    "TemplateInput",
    "TemplateQuery",
    "TemplateRecord",
    "__version__",
]
