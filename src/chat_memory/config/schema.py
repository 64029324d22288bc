"""
chat-memory config schema.

Defines the ``chat_memory.toml`` layout, its built-in defaults and a strict
validator that reports every problem as a structured issue with a dotted
path, instead of stopping at the first one.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, TypedDict

from chat_memory.constants import (
    CONNECTION_STRATEGIES,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_SYNCHRONOUS,
    SYNCHRONOUS_MODES,
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("storage", "base_dir"),
    ("observability", "log_dir"),
)


class StorageConfig(TypedDict):
    base_dir: str
    connection_strategy: str
    busy_timeout_ms: int
    synchronous: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    log_to_stdout: bool


class ChatMemoryConfig(TypedDict):
    storage: StorageConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ChatMemoryConfig] = {
    "storage": {
        "base_dir": "data",
        "connection_strategy": "auto",
        "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
        "synchronous": DEFAULT_SYNCHRONOUS,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stdout": False,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Typed view of the ``[storage]`` table consumed by ``MemoryDB``."""

    base_dir: Path
    connection_strategy: str = "auto"
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    synchronous: str = DEFAULT_SYNCHRONOUS

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> StorageSettings:
        validated = assert_valid_config(config)
        storage = validated["storage"]
        return cls(
            base_dir=Path(storage["base_dir"]),
            connection_strategy=storage["connection_strategy"],
            busy_timeout_ms=storage["busy_timeout_ms"],
            synchronous=storage["synchronous"],
        )


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ChatMemoryConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` without mutating either."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, {"storage", "observability"}, "", issues)
    _require_keys(root, {"storage", "observability"}, "", issues)

    out: dict[str, Any] = {}
    storage = _as_object(root.get("storage", {}), "storage", issues)
    if storage is not None:
        out["storage"] = _validate_storage(storage, "storage", issues)
    observability = _as_object(root.get("observability", {}), "observability", issues)
    if observability is not None:
        out["observability"] = _validate_observability(observability, "observability", issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_storage(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    allowed = {"base_dir", "connection_strategy", "busy_timeout_ms", "synchronous"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "base_dir" in payload:
        parsed_base_dir = _as_path_text(payload["base_dir"], _join(path, "base_dir"), issues)
        if parsed_base_dir is not None:
            out["base_dir"] = parsed_base_dir

    if "connection_strategy" in payload:
        parsed_strategy = _as_enum(
            payload["connection_strategy"],
            _join(path, "connection_strategy"),
            issues,
            allowed_values=CONNECTION_STRATEGIES,
            fold=str.lower,
        )
        if parsed_strategy is not None:
            out["connection_strategy"] = parsed_strategy

    if "busy_timeout_ms" in payload:
        parsed_timeout = _as_int(
            payload["busy_timeout_ms"],
            _join(path, "busy_timeout_ms"),
            issues,
            minimum=0,
        )
        if parsed_timeout is not None:
            out["busy_timeout_ms"] = parsed_timeout

    if "synchronous" in payload:
        parsed_synchronous = _as_enum(
            payload["synchronous"],
            _join(path, "synchronous"),
            issues,
            allowed_values=SYNCHRONOUS_MODES,
            fold=str.upper,
        )
        if parsed_synchronous is not None:
            out["synchronous"] = parsed_synchronous

    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_log_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
            fold=str.upper,
        )
        if parsed_log_level is not None:
            out["log_level"] = parsed_log_level

    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir

    if "log_to_stdout" in payload:
        parsed_stdout = _as_bool(payload["log_to_stdout"], _join(path, "log_to_stdout"), issues)
        if parsed_stdout is not None:
            out["log_to_stdout"] = parsed_stdout

    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
    fold: Callable[[str], str] | None = None,
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if fold is not None:
        parsed = fold(parsed)
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = existing if isinstance(existing, dict) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ChatMemoryConfig",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ObservabilityConfig",
    "StorageConfig",
    "StorageSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
