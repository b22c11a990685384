"""Deduplicator - drops candidates the ledger says the user already received."""

from __future__ import annotations

from collections.abc import Sequence

from salesdigest.config import LOOKBACK_DAYS
from salesdigest.contracts.ledger import LedgerStore
from salesdigest.storage.models import Article, Channel, UserProfile


def dedupe(
    user: UserProfile,
    candidates: Sequence[Article],
    ledger: LedgerStore,
    lookback_days: int = LOOKBACK_DAYS,
    channel: Channel = Channel.DIGEST,
) -> list[Article]:
    """
    Remove articles sent to ``user`` within ``lookback_days`` (by id or URL).

    Read-only against the ledger; input order is preserved.
    """
    if lookback_days < 0:
        raise ValueError("lookback_days must be non-negative")
    if not candidates:
        return []

    sent = ledger.sent_keys(user.id, lookback_days, channel)
    return [article for article in candidates if not sent.contains(article)]
