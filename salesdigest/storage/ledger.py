"""
Sent-Article Ledger - per-user record of which articles went out and when.

An article counts as already sent when either its id or the hash of its URL
matches a record inside the lookback window.  Feeds sometimes re-issue the
same story under a regenerated id; the URL keeps it recognisable.

Records are only written after a delivery is confirmed.  Nothing here is a
process-wide singleton: the ledger owns its connection pool and is opened and
closed by whoever constructs it.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from salesdigest.config import DB_POOL_SIZE, LEDGER_DB_PATH, PROCESSING_TIMEZONE
from salesdigest.errors import LedgerWriteError
from salesdigest.infrastructure.database import DatabaseConnectionPool, retry_on_db_lock
from salesdigest.infrastructure.database_schema import init_schema, validate_schema
from salesdigest.observability.logging import get_logger
from salesdigest.observability.telemetry import counter
from salesdigest.storage.models import Article, Channel, LedgerStats, SentArticleRecord, url_hash

logger = get_logger(__name__)

Clock = Callable[[], datetime]

# Fixed-width so stored timestamps compare correctly as strings
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=UTC)


@dataclass(frozen=True)
class SentKeys:
    """Ids and URL hashes sent to one user inside a window."""

    article_ids: frozenset[str]
    url_hashes: frozenset[str]

    def contains(self, article: Article) -> bool:
        return article.id in self.article_ids or article.url_hash in self.url_hashes


class SQLiteLedger:
    """
    SQLite-backed ledger.

    Usage:
        with SQLiteLedger(path) as ledger:
            if not ledger.was_sent(user_id, article.id, article.url, within_days=3):
                ...
            ledger.record(user_id, delivered_articles)
    """

    def __init__(
        self,
        db_path: str | Path = LEDGER_DB_PATH,
        *,
        clock: Clock = utc_now,
        timezone: str = PROCESSING_TIMEZONE,
        pool_size: int = DB_POOL_SIZE,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.tz = ZoneInfo(timezone)
        self.pool_size = pool_size
        self._pool: DatabaseConnectionPool | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> SQLiteLedger:
        if self._pool is not None:
            return self
        self._pool = DatabaseConnectionPool(self.db_path, pool_size=self.pool_size)
        with self._pool.transaction() as conn:
            init_schema(conn)
            validate_schema(conn)
        logger.info("Ledger opened at %s", self.db_path)
        return self

    def close(self) -> None:
        if self._pool is None:
            return
        if not self._pool.is_memory and not self._pool.closed:
            self._pool.checkpoint_wal()
        self._pool.close_all()
        self._pool = None
        logger.info("Ledger closed")

    def __enter__(self) -> SQLiteLedger:
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def pool(self) -> DatabaseConnectionPool:
        if self._pool is None:
            raise RuntimeError("Ledger is not open; call open() first")
        return self._pool

    # ------------------------------------------------------------------
    # Time helpers
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self.clock()

    def digest_date_for(self, when: datetime) -> str:
        """Calendar day of a send in the processing timezone."""
        return when.astimezone(self.tz).date().isoformat()

    def _cutoff(self, within_days: int) -> str:
        return format_ts(self.now() - timedelta(days=within_days))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def was_sent(
        self,
        user_id: str,
        article_id: str,
        article_url: str,
        within_days: int,
        channel: Channel = Channel.DIGEST,
    ) -> bool:
        """True if this article id or URL went to the user within the window."""
        with self.pool.connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM sent_articles
                WHERE user_id = ? AND channel = ? AND sent_at >= ?
                  AND (article_id = ? OR article_url_hash = ?)
                LIMIT 1
                """,
                (user_id, channel.value, self._cutoff(within_days), article_id, url_hash(article_url)),
            ).fetchone()
        return row is not None

    def sent_keys(
        self, user_id: str, within_days: int, channel: Channel = Channel.DIGEST
    ) -> SentKeys:
        """All ids and URL hashes sent to the user within the window, in one query."""
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT article_id, article_url_hash FROM sent_articles
                WHERE user_id = ? AND channel = ? AND sent_at >= ?
                """,
                (user_id, channel.value, self._cutoff(within_days)),
            ).fetchall()
        return SentKeys(
            article_ids=frozenset(row["article_id"] for row in rows),
            url_hashes=frozenset(row["article_url_hash"] for row in rows),
        )

    def records_for(self, user_id: str, channel: Channel = Channel.DIGEST) -> list[SentArticleRecord]:
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id, article_id, article_url_hash, sent_at, digest_date, channel
                FROM sent_articles
                WHERE user_id = ? AND channel = ?
                ORDER BY sent_at DESC, id DESC
                """,
                (user_id, channel.value),
            ).fetchall()
        return [
            SentArticleRecord(
                user_id=row["user_id"],
                article_id=row["article_id"],
                article_url_hash=row["article_url_hash"],
                sent_at=parse_ts(row["sent_at"]),
                digest_date=row["digest_date"],
                channel=Channel(row["channel"]),
            )
            for row in rows
        ]

    def stats(self, user_id: str, channel: Channel = Channel.DIGEST) -> LedgerStats:
        with self.pool.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, MAX(sent_at) AS last_sent
                FROM sent_articles WHERE user_id = ? AND channel = ?
                """,
                (user_id, channel.value),
            ).fetchone()
            if not row or not row["total"]:
                return LedgerStats()
            last = conn.execute(
                """
                SELECT digest_date FROM sent_articles
                WHERE user_id = ? AND channel = ? AND sent_at = ?
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, channel.value, row["last_sent"]),
            ).fetchone()
        return LedgerStats(total_sent=row["total"], last_digest_date=last["digest_date"] if last else None)

    def count_older_than(self, days: int) -> int:
        with self.pool.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM sent_articles WHERE sent_at < ?",
                (self._cutoff(days),),
            ).fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(
        self,
        user_id: str,
        articles: Iterable[Article],
        channel: Channel = Channel.DIGEST,
        digest_date: str | None = None,
    ) -> int:
        """
        Append one record per article, stamped with the current ledger time.

        Call only after delivery is confirmed.

        Returns:
            Number of records written

        Raises:
            LedgerWriteError: If the write fails after retries
        """
        sent_at = self.now()
        sent_at_str = format_ts(sent_at)
        day = digest_date or self.digest_date_for(sent_at)

        rows: list[tuple[str, str, str, str, str, str]] = []
        seen: set[str] = set()
        for article in articles:
            if article.id in seen:
                continue
            seen.add(article.id)
            rows.append((user_id, article.id, article.url_hash, sent_at_str, day, channel.value))

        if not rows:
            return 0

        try:
            self._insert(rows)
        except (sqlite3.Error, RuntimeError) as e:
            counter("ledger.write_failures")
            logger.error("Ledger write failed for user %s: %s", user_id, e)
            raise LedgerWriteError(f"could not record {len(rows)} articles for {user_id}: {e}") from e

        counter("ledger.records_written", len(rows))
        logger.debug("Recorded %d %s articles for user %s", len(rows), channel.value, user_id)
        return len(rows)

    @retry_on_db_lock()
    def _insert(self, rows: list[tuple[str, str, str, str, str, str]]) -> None:
        with self.pool.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO sent_articles
                    (user_id, article_id, article_url_hash, sent_at, digest_date, channel)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    @retry_on_db_lock()
    def purge_older_than(self, days: int) -> int:
        """Delete records whose sent_at is older than ``days``; returns rows removed."""
        with self.pool.transaction() as conn:
            cursor = conn.execute("DELETE FROM sent_articles WHERE sent_at < ?", (self._cutoff(days),))
            removed = cursor.rowcount
        counter("ledger.records_purged", removed)
        return removed

    @retry_on_db_lock()
    def clear(self, user_id: str | None = None) -> int:
        """Drop one user's history, or every record when no user is given."""
        with self.pool.transaction() as conn:
            if user_id is None:
                cursor = conn.execute("DELETE FROM sent_articles")
            else:
                cursor = conn.execute("DELETE FROM sent_articles WHERE user_id = ?", (user_id,))
            removed = cursor.rowcount
        logger.info("Cleared %d ledger records%s", removed, f" for {user_id}" if user_id else "")
        return removed
