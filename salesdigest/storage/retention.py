"""
Ledger retention.

Sent-article records only matter inside the dedup lookback windows: 3 days
for digests, 7 for alerts.  The purge covers both channels, so the retention
window (7 days by default) may not be shorter than either.  Anything older
can be dropped.  The orchestrator purges lazily after each
production run; this module is the explicit entry point for scheduled
cleanup and for reporting.

Usage:
    with SQLiteLedger(path) as ledger:
        cleanup_sent_articles(ledger, days=7, dry_run=True)
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from salesdigest.config import ALERT_LOOKBACK_DAYS, LOOKBACK_DAYS, RETENTION_DAYS
from salesdigest.observability.logging import get_logger
from salesdigest.observability.telemetry import log_event
from salesdigest.storage.ledger import SQLiteLedger, format_ts, parse_ts

logger = get_logger(__name__)


def cleanup_sent_articles(
    ledger: SQLiteLedger, days: int = RETENTION_DAYS, dry_run: bool = False
) -> dict[str, int]:
    """
    Delete ledger records older than ``days``.

    Side Effects:
    - Deletes from `sent_articles` unless dry_run
    - Logs cleanup statistics

    Args:
        ledger: Open ledger
        days: Retention window in days; must cover the digest and alert lookback windows
        dry_run: Only count what would be deleted

    Returns:
        {"records_expired": int, "records_deleted": int}

    Raises:
        ValueError: If ``days`` is shorter than either lookback window
    """
    floor = max(LOOKBACK_DAYS, ALERT_LOOKBACK_DAYS)
    if days < floor:
        raise ValueError(
            f"retention of {days} days would drop records still inside the {floor}-day lookback"
        )

    prefix = "[DRY RUN] " if dry_run else ""
    expired = ledger.count_older_than(days)
    stats = {"records_expired": expired, "records_deleted": 0}

    logger.info("%sFound %d ledger records older than %d days", prefix, expired, days)

    if expired and not dry_run:
        stats["records_deleted"] = ledger.purge_older_than(days)
        logger.info("Deleted %d ledger records", stats["records_deleted"])

    log_event("ledger.retention", retention_days=days, dry_run=dry_run, **stats)

    if not dry_run:
        _check_retention_policy_violations(ledger, days)

    return stats


def _check_retention_policy_violations(ledger: SQLiteLedger, days: int) -> None:
    """Log an error if records older than the policy survived a cleanup."""
    cutoff = format_ts(ledger.now() - timedelta(days=days))
    try:
        with ledger.pool.connection() as conn:
            row = conn.execute(
                "SELECT MIN(sent_at), COUNT(*) FROM sent_articles WHERE sent_at < ?",
                (cutoff,),
            ).fetchone()
    except Exception as e:
        logger.error("Failed to check retention policy violations: %s", e)
        return

    oldest, violation_count = row[0], row[1]
    if oldest and violation_count:
        age_days = (ledger.now() - parse_ts(oldest)).days
        logger.error(
            "RETENTION POLICY VIOLATION: %d ledger records older than %d days (oldest %d days)",
            violation_count,
            days,
            age_days,
        )


def get_retention_stats(ledger: SQLiteLedger, days: int = RETENTION_DAYS) -> dict[str, Any]:
    """
    Size and age of the ledger.

    Returns:
        {
            "total_records": int,
            "users": int,
            "oldest_sent_at": str | None,
            "newest_sent_at": str | None,
            "records_older_than_retention": int,
        }
    """
    cutoff = format_ts(ledger.now() - timedelta(days=days))
    with ledger.pool.connection() as conn:
        row = conn.execute(
            """
            SELECT
                COUNT(*),
                COUNT(DISTINCT user_id),
                MIN(sent_at),
                MAX(sent_at),
                SUM(CASE WHEN sent_at < ? THEN 1 ELSE 0 END)
            FROM sent_articles
            """,
            (cutoff,),
        ).fetchone()

    return {
        "total_records": row[0],
        "users": row[1],
        "oldest_sent_at": row[2],
        "newest_sent_at": row[3],
        "records_older_than_retention": row[4] or 0,
    }
