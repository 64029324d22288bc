"""Module entrypoint for ``python -m chat_memory``."""

from __future__ import annotations

from chat_memory.cli import cli_entrypoint

if __name__ == "__main__":
    cli_entrypoint()
