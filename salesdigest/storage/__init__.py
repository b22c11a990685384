"""Storage - sent-article ledger, retention and domain models"""

from __future__ import annotations

from salesdigest.storage.ledger import SQLiteLedger
from salesdigest.storage.models import (
    AlertOutcome,
    AlertRunSummary,
    Article,
    Channel,
    DeliveryResult,
    DigestResult,
    EmailPreferences,
    LedgerStats,
    RunOptions,
    RunSummary,
    SentArticleRecord,
    UserOutcome,
    UserProfile,
    UserRole,
)

__all__ = [
    "SQLiteLedger",
    "AlertOutcome",
    "AlertRunSummary",
    "Article",
    "Channel",
    "DeliveryResult",
    "DigestResult",
    "EmailPreferences",
    "LedgerStats",
    "RunOptions",
    "RunSummary",
    "SentArticleRecord",
    "UserOutcome",
    "UserProfile",
    "UserRole",
]
