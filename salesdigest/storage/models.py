"""
Domain models (Pydantic v2) for the digest pipeline.

Articles and user profiles arrive already scored and classified from upstream
collaborators; everything here is frozen so no stage can mutate what it was
handed.  Contact fields are redacted in repr so profiles are safe to log.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from hashlib import sha256
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


def _hash_value(value: str) -> str:
    digest = sha256(value.encode("utf-8")).hexdigest()
    return f"hash:{digest[:12]}"


def url_hash(url: str) -> str:
    """Stable identity of an article URL for ledger matching."""
    return sha256(url.strip().encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class FrozenModel(BaseModel):
    """Base model that redacts sensitive fields in repr."""

    model_config = ConfigDict(frozen=True)
    _redact_fields: ClassVar[set[str]] = {"email", "name"}

    def _redacted_dump(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        for field in self._redact_fields:
            if field in data and isinstance(data[field], str) and data[field]:
                data[field] = _hash_value(data[field])
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._redacted_dump()})"

    def redacted(self) -> dict[str, Any]:
        """Public helper for telemetry-safe dumps."""
        return self._redacted_dump()


class UserRole(str, Enum):
    """Role of a digest recipient.

    Extends str so profiles loaded from JSON compare against raw strings.
    """

    SALES = "sales"
    MANAGER = "manager"
    EXECUTIVE = "executive"


class Channel(str, Enum):
    DIGEST = "digest"
    SMS = "sms"


class Article(FrozenModel):
    id: str
    url: str
    published_at: datetime
    relevance_score: int = Field(ge=0, le=100)
    sectors: frozenset[str] = frozenset()
    companies: frozenset[str] = frozenset()
    categories: frozenset[str] = frozenset()
    is_breaking: bool = False

    # Display fields, passed through to delivery untouched
    title: str = ""
    source: str = ""
    summary: str | None = None

    @field_validator("id", "url")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("published_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def url_hash(self) -> str:
        return url_hash(self.url)


class EmailPreferences(FrozenModel):
    enabled: bool = True
    min_relevance_score: int = Field(default=50, ge=0, le=100)
    breaking_news_alerts: bool = False


class UserProfile(FrozenModel):
    id: str
    role: UserRole
    relevant_company_ids: frozenset[str] = frozenset()
    followed_sectors: frozenset[str] = frozenset()
    email_preferences: EmailPreferences = Field(default_factory=EmailPreferences)
    name: str | None = None
    email: str | None = None

    @field_validator("id")
    @classmethod
    def _id_required(cls, value: str) -> str:
        if not value:
            raise ValueError("UserProfile.id is required")
        return value

    @property
    def min_relevance_score(self) -> int:
        return self.email_preferences.min_relevance_score


class SentArticleRecord(FrozenModel):
    user_id: str
    article_id: str
    article_url_hash: str
    sent_at: datetime
    digest_date: str  # YYYY-MM-DD in the processing timezone
    channel: Channel = Channel.DIGEST

    @field_validator("sent_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class LedgerStats(FrozenModel):
    total_sent: int = 0
    last_digest_date: str | None = None


class DigestResult(FrozenModel):
    user_id: str
    articles: tuple[Article, ...] = ()
    generated_at: datetime
    candidate_count: int = 0
    suppressed_count: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def article_count(self) -> int:
        return len(self.articles)

    @property
    def is_empty(self) -> bool:
        return not self.articles


class DeliveryResult(FrozenModel):
    success: bool
    error: str | None = None

    @model_validator(mode="after")
    def _error_only_on_failure(self) -> DeliveryResult:
        if self.success and self.error:
            raise ValueError("a successful delivery cannot carry an error")
        return self


class UserOutcome(FrozenModel):
    user_id: str
    success: bool
    article_count: int = 0
    error: str | None = None
    warning: str | None = None


class RunOptions(FrozenModel):
    test_mode: bool = False
    specific_user_id: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)


class RunSummary(FrozenModel):
    run_id: str
    test_mode: bool = False
    started_at: datetime
    completed_at: datetime
    timed_out: bool = False
    results: tuple[UserOutcome, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def users_processed(self) -> int:
        return len(self.results)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def emails_succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def emails_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_articles_included(self) -> int:
        # Failed deliveries keep their would-be count
        return sum(r.article_count for r in self.results)

    @property
    def processed_user_ids(self) -> list[str]:
        return [r.user_id for r in self.results]


class AlertOutcome(FrozenModel):
    user_id: str
    article_id: str
    alert_type: str
    success: bool
    error: str | None = None
    warning: str | None = None


class AlertRunSummary(FrozenModel):
    run_id: str
    test_mode: bool = False
    started_at: datetime
    completed_at: datetime
    critical_articles_found: int = 0
    results: tuple[AlertOutcome, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def alerts_sent(self) -> int:
        return sum(1 for r in self.results if r.success)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def alerts_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)
