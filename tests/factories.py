"""
Fakes and builders shared by the test suite.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from salesdigest.storage.models import (
    Article,
    DeliveryResult,
    DigestResult,
    EmailPreferences,
    UserProfile,
    UserRole,
)

NOW = datetime(2025, 11, 3, 15, 0, tzinfo=UTC)


class FakeClock:
    """Mutable clock; tests move time with advance()."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current = self.current + timedelta(**delta)


class FakeArticleSource:
    def __init__(self, articles: Iterable[Article] = (), error: Exception | None = None):
        self.articles = list(articles)
        self.error = error

    def fetch_scored_articles(self) -> list[Article]:
        if self.error:
            raise self.error
        return list(self.articles)


class FakeRoster:
    def __init__(self, users: Iterable[UserProfile] = (), error: Exception | None = None):
        self.users = list(users)
        self.error = error

    def users_with_email_enabled(self) -> list[UserProfile]:
        if self.error:
            raise self.error
        return list(self.users)


class FakeDelivery:
    """Records deliveries; users in fail_for get a failed result, users in raise_for raise."""

    def __init__(self, fail_for: Iterable[str] = (), raise_for: Iterable[str] = ()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.delivered: list[tuple[str, list[str]]] = []

    def deliver(self, user: UserProfile, digest: DigestResult) -> DeliveryResult:
        if user.id in self.raise_for:
            raise ConnectionError("smtp down")
        if user.id in self.fail_for:
            return DeliveryResult(success=False, error="mailbox full")
        self.delivered.append((user.id, [a.id for a in digest.articles]))
        return DeliveryResult(success=True)


class FakeAlertSender:
    def __init__(self, fail_for: Iterable[str] = ()):
        self.fail_for = set(fail_for)
        self.sent: list[tuple[str, str, str]] = []

    def send_alert(self, user: UserProfile, article: Article, alert_type: str) -> DeliveryResult:
        if article.id in self.fail_for:
            return DeliveryResult(success=False, error="carrier rejected")
        self.sent.append((user.id, article.id, alert_type))
        return DeliveryResult(success=True)


def make_article(article_id: str, score: int = 80, **overrides) -> Article:
    data = {
        "id": article_id,
        "url": f"https://news.example.com/{article_id}",
        "published_at": NOW - timedelta(hours=2),
        "relevance_score": score,
    }
    data.update(overrides)
    return Article.model_validate(data)


def make_user(
    user_id: str, role: UserRole = UserRole.SALES, min_score: int = 50, **overrides
) -> UserProfile:
    data = {
        "id": user_id,
        "role": role,
        "email_preferences": EmailPreferences(min_relevance_score=min_score),
    }
    data.update(overrides)
    return UserProfile.model_validate(data)


