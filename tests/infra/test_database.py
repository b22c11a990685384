"""
Tests for the SQLite plumbing under the ledger.

Validates:
1. Lock/busy errors are retried, anything else is raised at once
2. Pool overflow and shutdown behaviour
3. Schema creation is idempotent and validated
"""

from __future__ import annotations

import sqlite3

import pytest

from salesdigest.infrastructure.database import DatabaseConnectionPool, retry_on_db_lock
from salesdigest.infrastructure.database_schema import init_schema, validate_schema
from salesdigest.observability.telemetry import get_counter


def test_retry_on_lock_then_succeeds(monkeypatch):
    monkeypatch.setattr("salesdigest.infrastructure.database.time.sleep", lambda _: None)
    calls = []

    @retry_on_db_lock(max_retries=3, base_delay=0.01)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3
    assert get_counter("database.lock_retries") == 2


def test_retry_gives_up_after_max(monkeypatch):
    monkeypatch.setattr("salesdigest.infrastructure.database.time.sleep", lambda _: None)
    calls = []

    @retry_on_db_lock(max_retries=2, base_delay=0.01)
    def always_busy():
        calls.append(1)
        raise sqlite3.OperationalError("database is busy")

    with pytest.raises(sqlite3.OperationalError):
        always_busy()
    assert len(calls) == 3


def test_other_operational_errors_not_retried():
    calls = []

    @retry_on_db_lock(max_retries=5)
    def broken():
        calls.append(1)
        raise sqlite3.OperationalError("no such table: sent_articles")

    with pytest.raises(sqlite3.OperationalError):
        broken()
    assert len(calls) == 1


def test_pool_creates_parent_directory(tmp_path):
    db_path = tmp_path / "nested" / "dir" / "ledger.db"

    pool = DatabaseConnectionPool(db_path, pool_size=2)
    try:
        assert db_path.parent.is_dir()
        with pool.connection() as conn:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    finally:
        pool.close_all()


def test_pool_overflow_uses_temporary_connection(tmp_path, monkeypatch):
    monkeypatch.setattr("salesdigest.infrastructure.database.DB_POOL_TIMEOUT", 0.01)
    pool = DatabaseConnectionPool(tmp_path / "ledger.db", pool_size=1)
    try:
        first = pool.get_connection()
        extra = pool.get_connection()
        assert pool.temp_conn_count == 1
        pool.return_connection(extra)
        assert pool.temp_conn_count == 0
        pool.return_connection(first)
        assert pool.stats()["available"] == 1
    finally:
        pool.close_all()


def test_closed_pool_refuses_connections(tmp_path):
    pool = DatabaseConnectionPool(tmp_path / "ledger.db", pool_size=1)
    pool.close_all()

    with pytest.raises(RuntimeError):
        pool.get_connection()


def test_transaction_rolls_back_on_error():
    pool = DatabaseConnectionPool(":memory:", pool_size=1)
    try:
        with pool.transaction() as conn:
            init_schema(conn)

        with pytest.raises(ValueError), pool.transaction() as conn:
            conn.execute(
                "INSERT INTO sent_articles (user_id, article_id, article_url_hash, sent_at, digest_date)"
                " VALUES ('u1', 'a1', 'h', '2025-11-03T00:00:00.000000Z', '2025-11-03')"
            )
            raise ValueError("abort")

        with pool.connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM sent_articles").fetchone()[0] == 0
    finally:
        pool.close_all()


def test_schema_is_idempotent_and_validated():
    conn = sqlite3.connect(":memory:")
    try:
        with pytest.raises(ValueError):
            validate_schema(conn)

        init_schema(conn)
        init_schema(conn)

        assert validate_schema(conn)
    finally:
        conn.close()
