"""
chat-memory unit tests for config loading and validation

File: tests/unit/config/test_config_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and explicit overrides.

What this test file should cover
- Precedence: overrides > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Structured validation issues with dotted paths.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chat_memory.config import (
    ConfigLoadError,
    ConfigValidationError,
    StorageSettings,
    default_config,
    dump_effective_config,
    load_config,
    validate_config,
)


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_override(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(
        config_path,
        """
[storage]
busy_timeout_ms = 1000
""".strip(),
    )
    env = {"CHAT_MEMORY_STORAGE_BUSY_TIMEOUT_MS": "2000"}

    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    override_loaded = load_config(
        config_path,
        environ=env,
        overrides={"storage.busy_timeout_ms": 3000},
    )

    assert file_loaded["storage"]["busy_timeout_ms"] == 1000
    assert env_loaded["storage"]["busy_timeout_ms"] == 2000
    assert override_loaded["storage"]["busy_timeout_ms"] == 3000


def test_missing_default_config_file_falls_back_to_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    loaded = load_config(environ={})

    assert loaded["storage"]["connection_strategy"] == "auto"
    assert loaded["storage"]["busy_timeout_ms"] == 5000
    assert loaded["storage"]["synchronous"] == "NORMAL"
    assert loaded["storage"]["base_dir"] == (tmp_path.resolve() / "data").as_posix()
    assert loaded["observability"]["log_level"] == "INFO"


def test_missing_explicit_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(config_path, "[storage\nbase_dir = ")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(config_path, "")
    loaded = load_config(
        config_path,
        environ={
            "CHAT_MEMORY_STORAGE_CONNECTION_STRATEGY": " Ephemeral ",
            "CHAT_MEMORY_STORAGE_SYNCHRONOUS": "full",
            "CHAT_MEMORY_OBSERVABILITY_LOG_TO_STDOUT": "yes",
            "CHAT_MEMORY_OBSERVABILITY_LOG_LEVEL": "debug",
            "CHAT_MEMORY_UNRELATED": "ignored",
        },
    )

    assert loaded["storage"]["connection_strategy"] == "ephemeral"
    assert loaded["storage"]["synchronous"] == "FULL"
    assert loaded["observability"]["log_to_stdout"] is True
    assert loaded["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"CHAT_MEMORY_STORAGE_BUSY_TIMEOUT_MS": "soon"}, "must be an integer"),
        ({"CHAT_MEMORY_OBSERVABILITY_LOG_TO_STDOUT": "maybe"}, "must be a boolean"),
    ],
)
def test_bad_env_values_raise_load_error(
    tmp_path: Path, env: dict[str, str], message: str
) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ=env)


def test_relative_paths_resolve_against_config_directory(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "chat_memory.toml"
    _write_config(
        config_path,
        """
[storage]
base_dir = "../store"

[observability]
log_dir = "/var/log/chat-memory"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["storage"]["base_dir"] == (tmp_path.resolve() / "store").as_posix()
    assert loaded["observability"]["log_dir"] == "/var/log/chat-memory"


def test_validation_collects_every_issue(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(
        config_path,
        """
[storage]
connection_strategy = "sharded"
busy_timeout_ms = -5
extra = 1
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {
        "storage.connection_strategy",
        "storage.busy_timeout_ms",
        "storage.extra",
    }


def test_validate_config_rejects_booleans_as_integers() -> None:
    config = default_config()
    config["storage"]["busy_timeout_ms"] = True  # type: ignore[typeddict-item]
    result = validate_config(config)
    assert not result.is_valid
    assert result.issues[0].path == "storage.busy_timeout_ms"
    assert "expected integer" in result.issues[0].message


def test_storage_settings_view(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(config_path, '[storage]\nconnection_strategy = "pooled"\n')
    settings = StorageSettings.from_config(load_config(config_path, environ={}))

    assert settings.base_dir == Path((tmp_path.resolve() / "data").as_posix())
    assert settings.connection_strategy == "pooled"
    assert settings.busy_timeout_ms == 5000


def test_effective_config_dump_is_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(config_path, "")
    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["storage"]["synchronous"] == "NORMAL"


def test_invalid_override_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "chat_memory.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match="invalid override key"):
        load_config(config_path, environ={}, overrides={"...": 1})
