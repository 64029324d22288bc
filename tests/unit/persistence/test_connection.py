"""Connection providers, pragmas and strategy selection."""

from __future__ import annotations

import sqlite3
import sys
import threading
import time
from pathlib import Path

import pytest

from chat_memory.persistence import connection as connection_module
from chat_memory.persistence.connection import (
    ConnectionOptions,
    EphemeralConnectionProvider,
    PooledConnectionProvider,
    create_connection_provider,
    open_prepared_connection,
)
from chat_memory.persistence.errors import MemoryDBError, MemoryDBIOError
from chat_memory.persistence.sqlite_helpers import open_connection, transaction


def test_prepared_connection_applies_pragmas(tmp_path: Path) -> None:
    options = ConnectionOptions(busy_timeout_ms=4321, synchronous="normal")
    conn = open_prepared_connection(tmp_path / "memories.db", options)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 4321
        assert conn.execute("PRAGMA synchronous").fetchone()[0] == 1
        assert isinstance(conn.execute("SELECT 1 AS one").fetchone(), sqlite3.Row)
    finally:
        conn.close()


def test_open_connection_rejects_bad_arguments(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        open_connection(tmp_path / "memories.db", busy_timeout_ms=-1)
    with pytest.raises(ValueError):
        open_connection(tmp_path / "memories.db", synchronous="SOMETIMES")


def test_open_connection_creates_missing_directories(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "deeper" / "memories.db"
    conn = open_connection(path)
    conn.close()
    assert path.parent.is_dir()


def test_unwritable_base_dir_raises_io_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory", encoding="utf-8")
    with pytest.raises(MemoryDBIOError):
        open_connection(blocker / "memories.db")


def test_transaction_rolls_back_on_error(tmp_path: Path) -> None:
    conn = open_prepared_connection(tmp_path / "memories.db", ConnectionOptions())
    try:
        conn.execute("CREATE TABLE t (v INTEGER)")
        with pytest.raises(RuntimeError), transaction(conn) as tx:
            tx.execute("INSERT INTO t VALUES (1)")
            raise RuntimeError("boom")
        assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
        assert not conn.in_transaction
    finally:
        conn.close()


def test_nested_transaction_uses_savepoint(tmp_path: Path) -> None:
    conn = open_prepared_connection(tmp_path / "memories.db", ConnectionOptions())
    try:
        conn.execute("CREATE TABLE t (v INTEGER)")
        with transaction(conn) as outer:
            outer.execute("INSERT INTO t VALUES (1)")
            with pytest.raises(RuntimeError), transaction(conn) as inner:
                inner.execute("INSERT INTO t VALUES (2)")
                raise RuntimeError("inner failure")
            outer.execute("INSERT INTO t VALUES (3)")
        values = [row[0] for row in conn.execute("SELECT v FROM t ORDER BY v")]
        assert values == [1, 3]
    finally:
        conn.close()


def test_pooled_provider_reuses_one_handle_per_scope(tmp_path: Path) -> None:
    provider = PooledConnectionProvider(tmp_path)
    with provider.connection("a") as first:
        pass
    with provider.connection("a") as second:
        pass
    with provider.connection("b") as other:
        pass

    assert first is second
    assert other is not first
    assert provider.cached_scopes() == ("a", "b")
    assert (tmp_path / "memories__a.db").exists()
    assert (tmp_path / "memories__b.db").exists()

    provider.close_all()
    assert provider.cached_scopes() == ()
    with pytest.raises(sqlite3.ProgrammingError):
        first.execute("SELECT 1")

    with provider.connection("a") as reopened:
        assert reopened is not first
    provider.close_all()


def test_pooled_open_on_a_locked_scope_does_not_stall_other_scopes(tmp_path: Path) -> None:
    provider = PooledConnectionProvider(tmp_path, ConnectionOptions(busy_timeout_ms=3000))
    holder = sqlite3.connect(tmp_path / "memories__a.db", isolation_level=None)
    holder.execute("BEGIN EXCLUSIVE")
    outcome: list[object] = []

    def open_locked_scope() -> None:
        try:
            with provider.connection("a") as conn:
                outcome.append(conn.execute("SELECT 1").fetchone()[0])
        except MemoryDBError as exc:
            outcome.append(exc)

    worker = threading.Thread(target=open_locked_scope)
    worker.start()
    try:
        time.sleep(0.2)
        started = time.monotonic()
        with provider.connection("b") as conn:
            assert conn.execute("SELECT 1").fetchone()[0] == 1
        assert time.monotonic() - started < 1.5
        assert worker.is_alive()
    finally:
        holder.execute("ROLLBACK")
        holder.close()
        worker.join(10)

    assert not worker.is_alive()
    assert len(outcome) == 1
    assert "b" in provider.cached_scopes()
    provider.close_all()


def test_pooled_slow_open_runs_outside_the_registry_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_open = connection_module.open_prepared_connection
    entered = threading.Event()
    release = threading.Event()

    def gated_open(path: Path, options: ConnectionOptions) -> sqlite3.Connection:
        if path.name == "memories__slow.db":
            entered.set()
            release.wait(10)
        return real_open(path, options)

    monkeypatch.setattr(connection_module, "open_prepared_connection", gated_open)
    provider = PooledConnectionProvider(tmp_path)
    fast_results: list[int] = []

    def use(scope_key: str, sink: list[int]) -> None:
        with provider.connection(scope_key) as conn:
            sink.append(conn.execute("SELECT 1").fetchone()[0])

    slow = threading.Thread(target=use, args=("slow", []))
    slow.start()
    assert entered.wait(5)
    fast = threading.Thread(target=use, args=("fast", fast_results))
    fast.start()
    fast.join(5)
    try:
        assert not fast.is_alive()
        assert fast_results == [1]
        assert slow.is_alive()
        assert provider.cached_scopes() == ("fast",)
    finally:
        release.set()
        slow.join(5)
        fast.join(5)

    assert provider.cached_scopes() == ("fast", "slow")
    provider.close_all()


def test_pooled_first_use_opens_each_scope_once(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_open = connection_module.open_prepared_connection
    opened: list[str] = []
    opened_lock = threading.Lock()

    def counting_open(path: Path, options: ConnectionOptions) -> sqlite3.Connection:
        with opened_lock:
            opened.append(path.name)
        time.sleep(0.05)
        return real_open(path, options)

    monkeypatch.setattr(connection_module, "open_prepared_connection", counting_open)
    provider = PooledConnectionProvider(tmp_path)
    handles: list[sqlite3.Connection] = []

    def use() -> None:
        with provider.connection("shared") as conn:
            handles.append(conn)

    threads = [threading.Thread(target=use) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert opened == ["memories__shared.db"]
    assert len(handles) == 6
    assert all(handle is handles[0] for handle in handles)
    provider.close_all()


def test_pooled_failed_open_is_retried_on_next_call(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_open = connection_module.open_prepared_connection
    failures = [MemoryDBIOError("disk unavailable")]

    def flaky_open(path: Path, options: ConnectionOptions) -> sqlite3.Connection:
        if failures:
            raise failures.pop()
        return real_open(path, options)

    monkeypatch.setattr(connection_module, "open_prepared_connection", flaky_open)
    provider = PooledConnectionProvider(tmp_path)

    with pytest.raises(MemoryDBIOError, match="disk unavailable"):
        with provider.connection("a"):
            pass
    assert provider.cached_scopes() == ()

    with provider.connection("a") as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1
    assert provider.cached_scopes() == ("a",)
    provider.close_all()


def test_discard_closes_only_the_named_scope(tmp_path: Path) -> None:
    provider = PooledConnectionProvider(tmp_path)
    with provider.connection("a") as first:
        pass
    with provider.connection("b"):
        pass

    provider.discard("a")
    provider.discard("missing")

    assert provider.cached_scopes() == ("b",)
    with pytest.raises(sqlite3.ProgrammingError):
        first.execute("SELECT 1")
    with provider.connection("a") as reopened:
        assert reopened is not first
    provider.close_all()


def test_ephemeral_provider_closes_after_every_call(tmp_path: Path) -> None:
    provider = EphemeralConnectionProvider(tmp_path)
    with provider.connection("") as conn:
        conn.execute("SELECT 1")

    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")
    assert (tmp_path / "memories.db").exists()
    provider.close_all()


def test_explicit_strategies(tmp_path: Path) -> None:
    assert isinstance(create_connection_provider(tmp_path, "pooled"), PooledConnectionProvider)
    assert isinstance(
        create_connection_provider(tmp_path, " Ephemeral "), EphemeralConnectionProvider
    )


def test_auto_strategy_prefers_pooling_on_desktop(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(connection_module, "supports_persistent_handles", lambda: True)
    assert isinstance(create_connection_provider(tmp_path, "auto"), PooledConnectionProvider)


def test_auto_strategy_falls_back_to_ephemeral_on_mobile(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(sys, "platform", "android")
    assert connection_module.supports_persistent_handles() is False
    provider = create_connection_provider(tmp_path, "auto")
    assert isinstance(provider, EphemeralConnectionProvider)


def test_unknown_strategy_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="connection strategy"):
        create_connection_provider(tmp_path, "sharded")


def test_provider_options_are_passed_through(tmp_path: Path) -> None:
    options = ConnectionOptions(busy_timeout_ms=250)
    provider = create_connection_provider(tmp_path, "pooled", options)
    assert provider.options is options
    with provider.connection("x") as conn:
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 250
    provider.close_all()
