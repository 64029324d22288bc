"""
Typed inputs, filters and records for memory rows and templates.

Inputs are accepted either as the dataclasses below or as the host's JSON
payload shape (snake_case keys) through ``from_dict``. Unknown keys and
wrongly typed values raise :class:`InvalidInputError` with a dotted path to
the offending field. Booleans are never accepted where an integer is
expected.

Payload fields (``row_data``, ``schema``, ``injection``) are arbitrary JSON
trees; their encodability is checked when they are written, not here.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, fields
from enum import StrEnum
from typing import TypeVar

from chat_memory.persistence.errors import InvalidInputError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_T = TypeVar("_T")


class QueryScope(StrEnum):
    """Discriminator for memory queries."""

    GLOBAL = "global"
    CONTACT = "contact"
    GROUP = "group"

    @classmethod
    def parse(cls, value: str | None) -> QueryScope | None:
        """Trimmed, case-insensitive lookup; anything unrecognized means unscoped."""

        if value is None:
            return None
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return None


@dataclass(frozen=True, slots=True)
class MemoryCreateInput:
    template_id: str
    table_id: str
    row_data: object
    id: str | None = None
    contact_id: str | None = None
    group_id: str | None = None
    is_active: bool | None = None
    is_pinned: bool | None = None
    priority: int | None = None
    sort_order: int | None = None

    def __post_init__(self) -> None:
        _as_str(self.template_id, "MemoryCreateInput.template_id")
        _as_str(self.table_id, "MemoryCreateInput.table_id")
        _as_optional_str(self.id, "MemoryCreateInput.id")
        _as_optional_str(self.contact_id, "MemoryCreateInput.contact_id")
        _as_optional_str(self.group_id, "MemoryCreateInput.group_id")
        _as_optional_bool(self.is_active, "MemoryCreateInput.is_active")
        _as_optional_bool(self.is_pinned, "MemoryCreateInput.is_pinned")
        _as_optional_int(self.priority, "MemoryCreateInput.priority")
        _as_optional_int(self.sort_order, "MemoryCreateInput.sort_order")

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MemoryCreateInput:
        data = _checked_mapping(cls, payload, "MemoryCreateInput")
        for required in ("template_id", "table_id", "row_data"):
            if required not in data:
                raise InvalidInputError(f"MemoryCreateInput.{required}: field is required")
        return cls(**data)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class MemoryUpdateInput:
    """Partial update; ``None`` means "leave unchanged"."""

    id: str
    row_data: object = None
    is_active: bool | None = None
    is_pinned: bool | None = None
    priority: int | None = None
    sort_order: int | None = None

    def __post_init__(self) -> None:
        _as_str(self.id, "MemoryUpdateInput.id")
        _as_optional_bool(self.is_active, "MemoryUpdateInput.is_active")
        _as_optional_bool(self.is_pinned, "MemoryUpdateInput.is_pinned")
        _as_optional_int(self.priority, "MemoryUpdateInput.priority")
        _as_optional_int(self.sort_order, "MemoryUpdateInput.sort_order")

    def has_changes(self) -> bool:
        return any(
            value is not None
            for value in (
                self.row_data,
                self.is_active,
                self.is_pinned,
                self.priority,
                self.sort_order,
            )
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MemoryUpdateInput:
        data = _checked_mapping(cls, payload, "MemoryUpdateInput")
        if "id" not in data:
            raise InvalidInputError("MemoryUpdateInput.id: field is required")
        return cls(**data)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class MemoryQuery:
    contact_id: str | None = None
    group_id: str | None = None
    template_id: str | None = None
    scope: str | None = None

    def __post_init__(self) -> None:
        _as_optional_str(self.contact_id, "MemoryQuery.contact_id")
        _as_optional_str(self.group_id, "MemoryQuery.group_id")
        _as_optional_str(self.template_id, "MemoryQuery.template_id")
        _as_optional_str(self.scope, "MemoryQuery.scope")

    @property
    def resolved_scope(self) -> QueryScope | None:
        return QueryScope.parse(self.scope)

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MemoryQuery:
        return cls(**_checked_mapping(cls, payload, "MemoryQuery"))  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class MemoryRecord:
    id: str
    template_id: str
    table_id: str
    contact_id: str | None
    group_id: str | None
    row_data: JSONValue
    is_active: bool
    is_pinned: bool
    priority: int
    sort_order: int
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row | Mapping[str, object]) -> MemoryRecord:
        return cls(
            id=str(row["id"]),
            template_id=str(row["template_id"]),
            table_id=str(row["table_id"]),
            contact_id=_optional_text(row["contact_id"]),
            group_id=_optional_text(row["group_id"]),
            row_data=decode_json_or_raw(row["row_data"]),
            is_active=bool(row["is_active"]),
            is_pinned=bool(row["is_pinned"]),
            priority=int(row["priority"]),
            sort_order=int(row["sort_order"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "table_id": self.table_id,
            "contact_id": self.contact_id,
            "group_id": self.group_id,
            "row_data": self.row_data,
            "is_active": self.is_active,
            "is_pinned": self.is_pinned,
            "priority": self.priority,
            "sort_order": self.sort_order,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class TemplateInput:
    id: str
    name: str
    schema: object
    author: str | None = None
    version: str | None = None
    description: str | None = None
    injection: object = None
    is_default: bool | None = None
    is_builtin: bool | None = None

    def __post_init__(self) -> None:
        _as_str(self.id, "TemplateInput.id")
        _as_str(self.name, "TemplateInput.name")
        _as_optional_str(self.author, "TemplateInput.author")
        _as_optional_str(self.version, "TemplateInput.version")
        _as_optional_str(self.description, "TemplateInput.description")
        _as_optional_bool(self.is_default, "TemplateInput.is_default")
        _as_optional_bool(self.is_builtin, "TemplateInput.is_builtin")

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> TemplateInput:
        data = _checked_mapping(cls, payload, "TemplateInput")
        for required in ("id", "name", "schema"):
            if required not in data:
                raise InvalidInputError(f"TemplateInput.{required}: field is required")
        return cls(**data)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class TemplateQuery:
    id: str | None = None
    is_default: bool | None = None
    is_builtin: bool | None = None

    def __post_init__(self) -> None:
        _as_optional_str(self.id, "TemplateQuery.id")
        _as_optional_bool(self.is_default, "TemplateQuery.is_default")
        _as_optional_bool(self.is_builtin, "TemplateQuery.is_builtin")

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> TemplateQuery:
        return cls(**_checked_mapping(cls, payload, "TemplateQuery"))  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class TemplateRecord:
    id: str
    name: str
    author: str | None
    version: str | None
    description: str | None
    schema: JSONValue
    injection: JSONValue
    created_at: int
    updated_at: int
    is_default: bool
    is_builtin: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row | Mapping[str, object]) -> TemplateRecord:
        raw_injection = row["injection"]
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            author=_optional_text(row["author"]),
            version=_optional_text(row["version"]),
            description=_optional_text(row["description"]),
            schema=decode_json_or_raw(row["schema"]),
            # Unreadable injection payloads are dropped, not surfaced raw.
            injection=decode_json_or_none(raw_injection),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            is_default=bool(row["is_default"]),
            is_builtin=bool(row["is_builtin"]),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "name": self.name,
            "author": self.author,
            "version": self.version,
            "description": self.description,
            "schema": self.schema,
            "injection": self.injection,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_default": self.is_default,
            "is_builtin": self.is_builtin,
        }


def coerce_input(value: _T | Mapping[str, object], cls: type[_T]) -> _T:
    """Accept either an instance of ``cls`` or a mapping for ``cls.from_dict``."""

    if isinstance(value, cls):
        return value
    if isinstance(value, Mapping):
        return cls.from_dict(value)  # type: ignore[attr-defined, no-any-return]
    raise InvalidInputError(
        f"{cls.__name__}: expected {cls.__name__} or object, got {type(value).__name__}"
    )


def decode_json_or_raw(payload: object) -> JSONValue:
    if payload is None:
        return None
    text = str(payload)
    try:
        return json.loads(text)  # type: ignore[no-any-return]
    except json.JSONDecodeError:
        return text


def decode_json_or_none(payload: object) -> JSONValue:
    if payload is None:
        return None
    try:
        return json.loads(str(payload))  # type: ignore[no-any-return]
    except json.JSONDecodeError:
        return None


def _checked_mapping(cls: type, payload: object, path: str) -> dict[str, object]:
    if not isinstance(payload, Mapping):
        raise InvalidInputError(f"{path}: expected object")
    allowed = {item.name for item in fields(cls)}
    parsed: dict[str, object] = {}
    for key, value in payload.items():
        if not isinstance(key, str):
            raise InvalidInputError(f"{path}: object keys must be strings")
        if key not in allowed:
            raise InvalidInputError(f"{path}.{key}: unknown field")
        parsed[key] = value
    return parsed


def _optional_text(value: object) -> str | None:
    return None if value is None else str(value)


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{path}: expected string")
    return value


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_optional_bool(value: object, path: str) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise InvalidInputError(f"{path}: expected boolean")
    return value


def _as_optional_int(value: object, path: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{path}: expected integer")
    return value


__all__ = [
    "JSONValue",
    "MemoryCreateInput",
    "MemoryQuery",
    "MemoryRecord",
    "MemoryUpdateInput",
    "QueryScope",
    "TemplateInput",
    "TemplateQuery",
    "TemplateRecord",
    "coerce_input",
    "decode_json_or_none",
    "decode_json_or_raw",
]
