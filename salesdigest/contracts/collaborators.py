"""
Protocols for the external collaborators of a digest run.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from salesdigest.storage.models import Article, DeliveryResult, DigestResult, UserProfile


@runtime_checkable
class ArticleSource(Protocol):
    """Upstream feed of articles that already carry scores and tags."""

    def fetch_scored_articles(self) -> list[Article]:
        """Return the current article pool. May raise on feed failure."""
        ...


@runtime_checkable
class RosterSource(Protocol):
    def users_with_email_enabled(self) -> list[UserProfile]:
        """Return profiles whose digest email is switched on."""
        ...


@runtime_checkable
class DigestDelivery(Protocol):
    """
    Transport for an assembled digest (email in production).

    Implementations report failure through DeliveryResult rather than raising;
    the orchestrator still treats a raised exception as a failed delivery.
    Delivery is assumed to deduplicate on its own identifiers, so a retried
    call for the same digest is safe.
    """

    def deliver(self, user: UserProfile, digest: DigestResult) -> DeliveryResult:
        ...


@runtime_checkable
class AlertSender(Protocol):
    """Transport for single-article breaking alerts (SMS in production)."""

    def send_alert(self, user: UserProfile, article: Article, alert_type: str) -> DeliveryResult:
        ...
