"""SQLite connection handling for the sent-article ledger.

The pool is an explicit object: whoever builds the ledger opens it at process
start and closes it at shutdown.  There is no module-level connection state,
so two ledgers (or a test ledger next to a real one) never share connections.

Provides:
- Bounded connection pool with temporary overflow connections
- Lock/busy retry with exponential backoff and jitter
- Corruption check on every new connection
- Shared in-memory databases for ``":memory:"`` paths
"""

from __future__ import annotations

import random
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, TypeVar

from salesdigest.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from salesdigest.observability.logging import get_logger
from salesdigest.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

MEMORY_PATH = ":memory:"

logger = get_logger(__name__)


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + random.uniform(0, delay * DB_RETRY_JITTER)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Retry a ledger operation while SQLite reports the database locked or busy.

    Parallel workers recording deliveries contend for the write lock.  Any
    other OperationalError is raised on the first attempt.

    Usage:
        @retry_on_db_lock()
        def _insert(self, rows):
            with self.pool.transaction() as conn:
                conn.executemany(...)
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if not _is_lock_error(e):
                        raise
                    if attempt >= max_retries:
                        logger.error("%s still locked after %d retries: %s", func.__name__, max_retries, e)
                        raise
                    pause = _backoff(attempt, base_delay, max_delay)
                    attempt += 1
                    counter("database.lock_retries")
                    logger.warning(
                        "%s hit a lock (retry %d/%d in %.2fs): %s",
                        func.__name__,
                        attempt,
                        max_retries,
                        pause,
                        e,
                    )
                    time.sleep(pause)

        return wrapper  # type: ignore[return-value]

    return decorator


def _verify_integrity(conn: sqlite3.Connection) -> None:
    """
    Raises:
        RuntimeError: quick_check did not come back clean
    """
    try:
        verdict = conn.execute("PRAGMA quick_check(1)").fetchone()[0]
    except sqlite3.DatabaseError as e:
        verdict = str(e)
    if verdict != "ok":
        conn.close()
        counter("database.corruption_detected")
        logger.critical("Ledger database failed integrity check: %s", verdict)
        raise RuntimeError(f"Database corruption detected: {verdict}")


class DatabaseConnectionPool:
    """
    Thread-safe connection pool for one SQLite database

    File databases run in WAL mode.  When every pooled connection is in use,
    up to ``DB_TEMP_CONN_MAX`` short-lived connections are opened and closed
    again when returned.
    """

    def __init__(self, db_path: str | Path, pool_size: int = DB_POOL_SIZE):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.db_path = str(db_path)
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.closed = False
        self.temp_conn_count = 0
        self._temp_lock = threading.Lock()
        self._temporary: set[int] = set()

        if self.is_memory:
            # Every pooled connection must see the same in-memory database
            self._target, self._uri = f"file:salesdigest-{uuid.uuid4().hex}?mode=memory&cache=shared", True
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._target, self._uri = self.db_path, False

        # A shared in-memory database lives only while one connection holds it,
        # so the first connection is not optional
        self.pool.put(self._open())
        for _ in range(pool_size - 1):
            try:
                self.pool.put(self._open())
            except (sqlite3.Error, RuntimeError) as e:
                logger.warning("Pool starting short, connection failed: %s", e)

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY_PATH

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._target,
            timeout=DB_CONNECT_TIMEOUT,
            check_same_thread=False,
            uri=self._uri,
        )
        _verify_integrity(conn)
        if not self.is_memory:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _open_temporary(self) -> sqlite3.Connection:
        with self._temp_lock:
            if self.temp_conn_count >= DB_TEMP_CONN_MAX:
                logger.critical(
                    "Ledger pool exhausted with %d temporary connections open (pool_size=%d)",
                    self.temp_conn_count,
                    self.pool_size,
                )
                raise RuntimeError(
                    f"Ledger connection pool exhausted (pool_size={self.pool_size}, "
                    f"temporary connections={self.temp_conn_count})"
                )
            self.temp_conn_count += 1
            in_use = self.temp_conn_count

        log_event("database.pool_exhausted", pool_size=self.pool_size, temp_conn_count=in_use)
        logger.warning("Ledger pool exhausted; opening temporary connection %d", in_use)
        try:
            conn = self._open()
        except Exception:
            with self._temp_lock:
                self.temp_conn_count -= 1
            raise
        with self._temp_lock:
            self._temporary.add(id(conn))
        return conn

    def get_connection(self) -> sqlite3.Connection:
        """
        Borrow a connection, falling back to a temporary one when the pool is dry

        Raises:
            RuntimeError: The pool is closed or the temporary limit is reached
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")
        try:
            return self.pool.get(timeout=DB_POOL_TIMEOUT)
        except Empty:
            return self._open_temporary()

    def return_connection(self, conn: sqlite3.Connection) -> None:
        with self._temp_lock:
            temporary = id(conn) in self._temporary
            if temporary:
                self._temporary.discard(id(conn))
                self.temp_conn_count -= 1

        if temporary or self.closed:
            conn.close()
            return
        try:
            self.pool.put_nowait(conn)
        except Full:
            logger.warning("Pool already full on return; closing connection")
            conn.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Borrow a pooled connection for reads

        Usage:
            with pool.connection() as conn:
                conn.execute("SELECT ...")
        """
        conn = self.get_connection()
        try:
            yield conn
        finally:
            self.return_connection(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection; commit on success, roll back and re-raise on error."""
        with self.connection() as conn:
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def close_all(self) -> None:
        self.closed = True
        while True:
            try:
                self.pool.get_nowait().close()
            except Empty:
                return

    def stats(self) -> dict[str, Any]:
        available = self.pool.qsize()
        return {
            "pool_size": self.pool_size,
            "available": available,
            "in_use": self.pool_size - available,
            "temporary": self.temp_conn_count,
            "closed": self.closed,
        }

    def checkpoint_wal(self) -> dict[str, Any]:
        """Fold the WAL back into the database file after a run's burst of writes."""
        if self.is_memory:
            return {"checkpointed_pages": 0, "log_pages": 0, "busy": False}

        with self.connection() as conn:
            busy, log_pages, checkpointed = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
        logger.info("WAL checkpoint completed (%d pages)", checkpointed)
        return {"checkpointed_pages": checkpointed, "log_pages": log_pages, "busy": bool(busy)}
