"""CLI routing, JSON output and exit codes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chat_memory.cli import build_parser, run_cli
from chat_memory.persistence import MemoryCreateInput, MemoryDB, TemplateInput


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in (
        "CHAT_MEMORY_STORAGE_BASE_DIR",
        "CHAT_MEMORY_STORAGE_CONNECTION_STRATEGY",
        "CHAT_MEMORY_OBSERVABILITY_LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    payload = json.loads(out[0])
    assert isinstance(payload, dict)
    return payload


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args([])
    assert excinfo.value.code == 2


def test_unknown_mode_is_a_usage_error(workdir: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_cli(["memories", "--mode", "everyone"])
    assert excinfo.value.code == 2


def test_init_creates_scope_database(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["init", "--scope", "persona one", "--json"]) == 0

    payload = _json_output(capsys)
    assert payload["scope"] == "persona_one"
    assert payload["schema_version"] == 1
    expected = (workdir.resolve() / "data" / "memories__persona_one.db").as_posix()
    assert payload["db_path"] == expected
    assert Path(expected).exists()
    assert (workdir / "logs" / "chat_memory.jsonl").exists()


def test_scopes_lists_existing_files(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["init"]) == 0
    assert run_cli(["init", "--scope", "beta"]) == 0
    capsys.readouterr()

    assert run_cli(["scopes", "--json"]) == 0
    assert _json_output(capsys) == {"scopes": ["", "beta"]}

    assert run_cli(["scopes"]) == 0
    assert capsys.readouterr().out.splitlines() == ["(default)", "beta"]


def test_check_reports_healthy_database(
    workdir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_cli(["check", "--scope", "p", "--json"]) == 0
    payload = _json_output(capsys)
    assert payload["ok"] is True
    assert payload["diagnostics"] == []
    assert payload["schema_version"] == 1


def test_check_on_corrupt_file_exits_with_store_error(
    workdir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    data_dir = workdir / "data"
    data_dir.mkdir()
    (data_dir / "memories__broken.db").write_bytes(b"definitely not sqlite" * 200)

    assert run_cli(["check", "--scope", "broken"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("error: memory db integrity check failed")
    assert list(data_dir.glob("memories__broken.db.corrupt.*.bak"))


def test_memories_and_templates_listing(
    workdir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    store_dir = workdir / "store"
    with MemoryDB(store_dir) as db:
        db.create_memory(
            "p",
            MemoryCreateInput(
                id="m-contact",
                template_id="tpl",
                table_id="facts",
                contact_id="alice",
                row_data={"likes": "tea"},
            ),
        )
        db.create_memory(
            "p",
            MemoryCreateInput(id="m-global", template_id="tpl", table_id="facts", row_data={}),
        )
        db.save_template("p", TemplateInput(id="tpl", name="Profile", schema={"tables": []}))

    base = ["--base-dir", str(store_dir), "--scope", "p", "--json"]
    assert run_cli(["memories", *base, "--mode", "contact", "--contact", "alice"]) == 0
    memories = _json_output(capsys)["memories"]
    assert isinstance(memories, list)
    assert [item["id"] for item in memories] == ["m-contact"]
    assert memories[0]["row_data"] == {"likes": "tea"}

    assert run_cli(["memories", *base, "--mode", "global"]) == 0
    assert [item["id"] for item in _json_output(capsys)["memories"]] == ["m-global"]

    assert run_cli(["templates", *base]) == 0
    templates = _json_output(capsys)["templates"]
    assert [item["id"] for item in templates] == ["tpl"]


def test_store_errors_exit_one(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["memories", "--mode", "contact"]) == 1
    assert "contact scope requires contact_id" in capsys.readouterr().err


def test_config_errors_exit_two(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (workdir / "bad.toml").write_text('[storage]\nconnection_strategy = "sharded"\n')

    assert run_cli(["scopes", "--config", "bad.toml"]) == 2
    assert "storage.connection_strategy" in capsys.readouterr().err

    assert run_cli(["scopes", "--config", "absent.toml"]) == 2
    assert "config file not found" in capsys.readouterr().err


def test_config_file_selects_base_dir(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (workdir / "conf").mkdir()
    (workdir / "conf" / "chat_memory.toml").write_text(
        '[storage]\nbase_dir = "../elsewhere"\nconnection_strategy = "ephemeral"\n'
    )

    assert run_cli(["init", "--config", "conf/chat_memory.toml", "--json"]) == 0
    payload = _json_output(capsys)
    assert payload["db_path"] == (workdir.resolve() / "elsewhere" / "memories.db").as_posix()
