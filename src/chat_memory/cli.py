"""
chat-memory command line interface.

Inspection and maintenance commands for the per-scope memory databases:
``init``, ``check``, ``scopes``, ``memories`` and ``templates``. Exit codes are
0 on success, 1 when the store reports an error (or ``check`` finds
problems) and 2 on usage or configuration errors.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from chat_memory.config import ConfigLoadError, ConfigValidationError, load_config
from chat_memory.observability import setup_logging, shutdown_logging
from chat_memory.persistence import (
    MemoryDB,
    MemoryDBError,
    MemoryQuery,
    TemplateQuery,
    normalize_scope_id,
)


class CLIError(RuntimeError):
    """Raised by command handlers to abort with a message and exit code."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="chat-memory",
        description=(
            "Inspect and maintain scoped chat memory databases.\n\n"
            "Examples:\n"
            "  chat-memory init --scope persona-1\n"
            "  chat-memory check --scope persona-1 --json\n"
            "  chat-memory memories --scope persona-1 --mode contact --contact alice\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to chat_memory.toml (default: ./chat_memory.toml if present).",
    )
    common.add_argument(
        "--base-dir",
        default=None,
        help="Override storage.base_dir from config.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    scoped = argparse.ArgumentParser(add_help=False)
    scoped.add_argument(
        "--scope",
        default=None,
        help="Raw scope id (persona/profile); omit for the default scope.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init",
        parents=[common, scoped],
        help="Create or migrate a scope database",
    )
    init_parser.set_defaults(handler=_cmd_init)

    check_parser = subparsers.add_parser(
        "check",
        parents=[common, scoped],
        help="Report schema version and run a quick integrity check",
    )
    check_parser.set_defaults(handler=_cmd_check)

    scopes_parser = subparsers.add_parser(
        "scopes",
        parents=[common],
        help="List scopes that have a database file",
    )
    scopes_parser.set_defaults(handler=_cmd_scopes)

    memories_parser = subparsers.add_parser(
        "memories",
        parents=[common, scoped],
        help="List memory rows in relevance order",
    )
    memories_parser.add_argument("--contact", default=None, help="Filter by contact id")
    memories_parser.add_argument("--group", default=None, help="Filter by group id")
    memories_parser.add_argument("--template", default=None, help="Filter by template id")
    memories_parser.add_argument(
        "--mode",
        choices=("global", "contact", "group"),
        default=None,
        help="Query scope discriminator (default: apply filters as given)",
    )
    memories_parser.set_defaults(handler=_cmd_memories)

    templates_parser = subparsers.add_parser(
        "templates",
        parents=[common, scoped],
        help="List templates, most recently updated first",
    )
    templates_parser.set_defaults(handler=_cmd_templates)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except MemoryDBError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging()
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


def cli_entrypoint() -> None:
    """Console-script entrypoint."""

    raise SystemExit(run_cli())


def _cmd_init(args: argparse.Namespace) -> int:
    with _open_store(args) as db:
        db.init(args.scope)
        payload = {
            "scope": normalize_scope_id(args.scope),
            "db_path": db.db_path(args.scope).as_posix(),
            "schema_version": db.schema_version(args.scope),
        }
    if args.json:
        _emit_json(payload)
    else:
        print(f"initialized {payload['db_path']} (schema v{payload['schema_version']})")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    with _open_store(args) as db:
        version = db.schema_version(args.scope)
        diagnostics = db.integrity_check(args.scope)
        db_path = db.db_path(args.scope).as_posix()
    healthy = not diagnostics
    if args.json:
        _emit_json(
            {
                "db_path": db_path,
                "schema_version": version,
                "ok": healthy,
                "diagnostics": list(diagnostics),
            }
        )
    else:
        print(f"{db_path}: schema v{version}, quick_check {'ok' if healthy else 'FAILED'}")
        for line in diagnostics:
            print(f"  {line}")
    return 0 if healthy else 1


def _cmd_scopes(args: argparse.Namespace) -> int:
    with _open_store(args) as db:
        scopes = db.list_scopes()
    if args.json:
        _emit_json({"scopes": scopes})
    else:
        for scope in scopes:
            print(scope or "(default)")
    return 0


def _cmd_memories(args: argparse.Namespace) -> int:
    query = MemoryQuery(
        contact_id=args.contact,
        group_id=args.group,
        template_id=args.template,
        scope=args.mode,
    )
    with _open_store(args) as db:
        records = db.query_memories(args.scope, query)
    if args.json:
        _emit_json({"memories": [record.to_dict() for record in records]})
        return 0
    for record in records:
        pin = "*" if record.is_pinned else " "
        owner = record.contact_id or record.group_id or "-"
        print(
            f"{pin} {record.id}  p={record.priority}  {record.template_id}/{record.table_id}  "
            f"{owner}"
        )
    return 0


def _cmd_templates(args: argparse.Namespace) -> int:
    with _open_store(args) as db:
        records = db.query_templates(args.scope, TemplateQuery())
    if args.json:
        _emit_json({"templates": [record.to_dict() for record in records]})
        return 0
    for record in records:
        flags = ",".join(
            name
            for name, enabled in (("default", record.is_default), ("builtin", record.is_builtin))
            if enabled
        )
        print(f"{record.id}  {record.name}  {flags or '-'}")
    return 0


def _open_store(args: argparse.Namespace) -> MemoryDB:
    config = _load_effective_config(args)
    setup_logging(config["observability"])
    return MemoryDB.from_config(config)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if args.base_dir is not None:
        overrides["storage.base_dir"] = str(Path(args.base_dir).expanduser().resolve())
    try:
        return load_config(args.config_path, overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "cli_entrypoint", "main", "run_cli"]
