"""
Repositories for memory rows and templates over a borrowed connection.

Repositories never open, cache or close connections; the caller lends one for
the length of a single call. Raw ``sqlite3.Error`` propagates unchanged so the
facade can translate it in one place.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from typing import Final

from chat_memory.ids import Clock, MemoryIdGenerator, now_ms
from chat_memory.persistence.errors import InvalidInputError, NotFoundError, SerializationError
from chat_memory.persistence.records import (
    MemoryCreateInput,
    MemoryQuery,
    MemoryRecord,
    MemoryUpdateInput,
    QueryScope,
    TemplateInput,
    TemplateQuery,
    TemplateRecord,
    coerce_input,
)
from chat_memory.persistence.sqlite_helpers import SQLValue, canonical_json, transaction

_MEMORY_COLUMNS: Final[str] = (
    "id, template_id, table_id, contact_id, group_id, row_data, is_active, "
    "is_pinned, priority, sort_order, created_at, updated_at"
)
_TEMPLATE_COLUMNS: Final[str] = (
    "id, name, author, version, description, schema, injection, "
    "created_at, updated_at, is_default, is_builtin"
)
_MEMORY_ORDER: Final[str] = "ORDER BY is_pinned DESC, priority DESC, updated_at DESC"

_INSERT_MEMORY_SQL: Final[str] = f"""
INSERT INTO memories ({_MEMORY_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPSERT_TEMPLATE_SQL: Final[str] = f"""
INSERT INTO templates ({_TEMPLATE_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name,
    author = excluded.author,
    version = excluded.version,
    description = excluded.description,
    schema = excluded.schema,
    injection = excluded.injection,
    updated_at = excluded.updated_at,
    is_default = excluded.is_default,
    is_builtin = excluded.is_builtin
"""


class _BaseRepo:
    def __init__(self, conn: sqlite3.Connection, *, clock: Clock | None = None) -> None:
        self._conn = conn
        self._clock = clock or now_ms


class MemoryRepo(_BaseRepo):
    """CRUD and relevance-ordered queries for memory rows."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        id_generator: MemoryIdGenerator | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(conn, clock=clock)
        self._id_generator = id_generator or MemoryIdGenerator(clock=self._clock)

    def create(self, payload: MemoryCreateInput | Mapping[str, object]) -> str:
        params = self._insert_params(coerce_input(payload, MemoryCreateInput))
        self._conn.execute(_INSERT_MEMORY_SQL, params)
        return str(params[0])

    def batch_create(
        self, payloads: Iterable[MemoryCreateInput | Mapping[str, object]]
    ) -> int:
        # Validate and encode everything before the first write.
        rows = [self._insert_params(coerce_input(item, MemoryCreateInput)) for item in payloads]
        with transaction(self._conn) as tx:
            tx.executemany(_INSERT_MEMORY_SQL, rows)
        return len(rows)

    def update(self, payload: MemoryUpdateInput | Mapping[str, object]) -> None:
        update = coerce_input(payload, MemoryUpdateInput)
        if not update.has_changes():
            raise InvalidInputError("no fields to update")

        assignments: list[str] = []
        params: list[SQLValue] = []
        if update.row_data is not None:
            assignments.append("row_data = ?")
            params.append(_encode_payload(update.row_data, "MemoryUpdateInput.row_data"))
        if update.is_active is not None:
            assignments.append("is_active = ?")
            params.append(int(update.is_active))
        if update.is_pinned is not None:
            assignments.append("is_pinned = ?")
            params.append(int(update.is_pinned))
        if update.priority is not None:
            assignments.append("priority = ?")
            params.append(update.priority)
        if update.sort_order is not None:
            assignments.append("sort_order = ?")
            params.append(update.sort_order)
        # updated_at never moves backwards, even if the clock does.
        assignments.append("updated_at = MAX(updated_at, ?)")
        params.append(self._clock())
        params.append(update.id)

        cursor = self._conn.execute(
            f"UPDATE memories SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise NotFoundError("memory", update.id)

    def delete(self, memory_id: str) -> None:
        cursor = self._conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        if cursor.rowcount == 0:
            raise NotFoundError("memory", memory_id)

    def batch_delete(self, memory_ids: Sequence[str]) -> int:
        """Delete every listed id atomically; unknown ids are skipped, not errors."""

        if isinstance(memory_ids, str):
            raise InvalidInputError("batch_delete.ids: expected a sequence of ids, got a string")
        ids = [_as_id(item, "batch_delete.ids") for item in memory_ids]
        deleted = 0
        with transaction(self._conn) as tx:
            for memory_id in ids:
                deleted += tx.execute("DELETE FROM memories WHERE id = ?", (memory_id,)).rowcount
        return deleted

    def get(self, memory_id: str) -> MemoryRecord | None:
        row = self._conn.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?",
            (memory_id,),
        ).fetchone()
        return None if row is None else MemoryRecord.from_row(row)

    def query(
        self, filters: MemoryQuery | Mapping[str, object] | None = None
    ) -> list[MemoryRecord]:
        query = MemoryQuery() if filters is None else coerce_input(filters, MemoryQuery)
        clauses: list[str] = []
        params: list[SQLValue] = []

        scope = query.resolved_scope
        if scope is QueryScope.GLOBAL:
            clauses.append("contact_id IS NULL AND group_id IS NULL")
        elif scope is QueryScope.CONTACT:
            if query.contact_id is None:
                raise InvalidInputError("contact scope requires contact_id")
            clauses.append("contact_id = ?")
            params.append(query.contact_id)
        elif scope is QueryScope.GROUP:
            if query.group_id is None:
                raise InvalidInputError("group scope requires group_id")
            clauses.append("group_id = ?")
            params.append(query.group_id)
        else:
            if query.contact_id is not None:
                clauses.append("contact_id = ?")
                params.append(query.contact_id)
            if query.group_id is not None:
                clauses.append("group_id = ?")
                params.append(query.group_id)

        if query.template_id is not None:
            clauses.append("template_id = ?")
            params.append(query.template_id)

        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" {_MEMORY_ORDER}"
        return [MemoryRecord.from_row(row) for row in self._conn.execute(sql, params).fetchall()]

    def _insert_params(self, item: MemoryCreateInput) -> tuple[SQLValue, ...]:
        supplied_id = (item.id or "").strip()
        memory_id = supplied_id or self._id_generator()
        row_data = _encode_payload(item.row_data, "MemoryCreateInput.row_data")
        now = self._clock()
        return (
            memory_id,
            item.template_id,
            item.table_id,
            item.contact_id,
            item.group_id,
            row_data,
            int(item.is_active if item.is_active is not None else True),
            int(bool(item.is_pinned)),
            item.priority if item.priority is not None else 0,
            item.sort_order if item.sort_order is not None else 0,
            now,
            now,
        )


class TemplateRepo(_BaseRepo):
    """Upsert, query and delete templates."""

    def save(self, payload: TemplateInput | Mapping[str, object]) -> None:
        template = coerce_input(payload, TemplateInput)
        schema = _encode_payload(template.schema, "TemplateInput.schema")
        injection = (
            None
            if template.injection is None
            else _encode_payload(template.injection, "TemplateInput.injection")
        )
        now = self._clock()
        self._conn.execute(
            _UPSERT_TEMPLATE_SQL,
            (
                template.id,
                template.name,
                template.author,
                template.version,
                template.description,
                schema,
                injection,
                now,
                now,
                int(bool(template.is_default)),
                int(bool(template.is_builtin)),
            ),
        )

    def query(
        self, filters: TemplateQuery | Mapping[str, object] | None = None
    ) -> list[TemplateRecord]:
        query = TemplateQuery() if filters is None else coerce_input(filters, TemplateQuery)
        clauses: list[str] = []
        params: list[SQLValue] = []
        if query.id is not None:
            clauses.append("id = ?")
            params.append(query.id)
        if query.is_default is not None:
            clauses.append("is_default = ?")
            params.append(int(query.is_default))
        if query.is_builtin is not None:
            clauses.append("is_builtin = ?")
            params.append(int(query.is_builtin))

        sql = f"SELECT {_TEMPLATE_COLUMNS} FROM templates"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY updated_at DESC"
        return [TemplateRecord.from_row(row) for row in self._conn.execute(sql, params).fetchall()]

    def delete(self, template_id: str) -> None:
        cursor = self._conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
        if cursor.rowcount == 0:
            raise NotFoundError("template", template_id)


def _encode_payload(value: object, path: str) -> str:
    try:
        return canonical_json(value)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"{path}: cannot encode as JSON ({exc})") from exc


def _as_id(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{path}: expected string id")
    return value


__all__ = ["MemoryRepo", "TemplateRepo"]
