"""
Ledger storage contract.

Durable per-user record of sent articles, queryable by recency window.
SQLiteLedger in salesdigest.storage.ledger is the shipped implementation.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from salesdigest.storage.models import Article, Channel, LedgerStats

if TYPE_CHECKING:
    from datetime import datetime

    from salesdigest.storage.ledger import SentKeys


@runtime_checkable
class LedgerStore(Protocol):
    def now(self) -> datetime:
        """Current ledger time (injectable clock)."""
        ...

    def digest_date_for(self, when: datetime) -> str:
        ...

    def was_sent(
        self,
        user_id: str,
        article_id: str,
        article_url: str,
        within_days: int,
        channel: Channel = Channel.DIGEST,
    ) -> bool:
        ...

    def sent_keys(self, user_id: str, within_days: int, channel: Channel = Channel.DIGEST) -> SentKeys:
        ...

    def record(
        self,
        user_id: str,
        articles: Iterable[Article],
        channel: Channel = Channel.DIGEST,
        digest_date: str | None = None,
    ) -> int:
        """Append one record per article. Raises LedgerWriteError on failure."""
        ...

    def stats(self, user_id: str, channel: Channel = Channel.DIGEST) -> LedgerStats:
        ...

    def count_older_than(self, days: int) -> int:
        ...

    def purge_older_than(self, days: int) -> int:
        ...
