"""
Ledger schema initialization and validation.
"""

from __future__ import annotations

import sqlite3

from salesdigest.observability.logging import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = {"sent_articles"}

SCHEMA = """
    CREATE TABLE IF NOT EXISTS sent_articles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        article_id TEXT NOT NULL,
        article_url_hash TEXT NOT NULL,
        sent_at TEXT NOT NULL,
        digest_date TEXT NOT NULL,
        channel TEXT NOT NULL DEFAULT 'digest'
    );

    CREATE INDEX IF NOT EXISTS idx_sent_articles_user_sent
        ON sent_articles(user_id, channel, sent_at DESC);

    CREATE INDEX IF NOT EXISTS idx_sent_articles_user_article
        ON sent_articles(user_id, channel, article_id);

    CREATE INDEX IF NOT EXISTS idx_sent_articles_user_url
        ON sent_articles(user_id, channel, article_url_hash);

    CREATE INDEX IF NOT EXISTS idx_sent_articles_sent_at
        ON sent_articles(sent_at);
"""


def init_schema(conn: sqlite3.Connection) -> None:
    """
    Create ledger tables and indexes (idempotent)

    Side Effects:
    - Creates sent_articles and its indexes if missing
    - Commits on the given connection
    """
    conn.executescript(SCHEMA)
    conn.commit()
    logger.debug("Ledger schema ensured")


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Check the ledger tables exist

    Raises:
        ValueError: If required tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    existing = {row[0] for row in rows}
    missing = REQUIRED_TABLES - existing
    if missing:
        raise ValueError(f"Ledger database missing tables: {', '.join(sorted(missing))}")
    return True
