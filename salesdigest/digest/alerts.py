"""
Breaking alerts - single-article notifications for critical news.

An article is critical when it is flagged breaking, scores at or above the
alert bar, or carries one of the alert categories, and it was published
inside the recency window.  Opted-in users get at most ``max_per_run``
alerts per run, most relevant first.

Alerts keep their own ledger channel so they never suppress, or are
suppressed by, the daily digest.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from salesdigest.config import (
    ALERT_CATEGORIES,
    ALERT_LOOKBACK_DAYS,
    ALERT_MAX_PER_RUN,
    ALERT_MIN_SCORE,
    ALERT_RECENCY_HOURS,
)
from salesdigest.contracts import AlertSender, ArticleSource, LedgerStore, RosterSource
from salesdigest.digest.assembler import assemble
from salesdigest.digest.rate_limit import TokenBucket
from salesdigest.errors import InputUnavailableError
from salesdigest.observability.logging import RunLoggerAdapter, bind_run, get_logger
from salesdigest.observability.telemetry import counter, log_event
from salesdigest.storage.models import (
    AlertOutcome,
    AlertRunSummary,
    Article,
    Channel,
    DeliveryResult,
    UserProfile,
)

logger = get_logger(__name__)


def is_critical(
    article: Article,
    min_score: int = ALERT_MIN_SCORE,
    categories: frozenset[str] = ALERT_CATEGORIES,
) -> bool:
    return (
        article.is_breaking
        or article.relevance_score >= min_score
        or not article.categories.isdisjoint(categories)
    )


def alert_type_for(article: Article) -> str:
    """Label used by the sender to pick a message template."""
    if article.is_breaking:
        return "breaking"
    if "government-contracts" in article.categories:
        return "government"
    if "mergers-acquisitions" in article.categories:
        return "ma"
    if "quarterly-filings" in article.categories:
        return "earnings"
    return "critical"


def select_critical(
    articles: Iterable[Article],
    now: datetime,
    *,
    recency_hours: int = ALERT_RECENCY_HOURS,
    min_score: int = ALERT_MIN_SCORE,
    categories: frozenset[str] = ALERT_CATEGORIES,
) -> list[Article]:
    """Recent critical articles, most relevant first."""
    cutoff = now - timedelta(hours=recency_hours)
    recent = [
        a
        for a in articles
        if a.published_at >= cutoff and is_critical(a, min_score, categories)
    ]
    return assemble(recent, max_size=len(recent))


def alert_recipients(users: Sequence[UserProfile]) -> list[UserProfile]:
    """Users who opted in to alerts, each once, in roster order."""
    selected: list[UserProfile] = []
    seen: set[str] = set()
    for user in users:
        if user.email_preferences.breaking_news_alerts and user.id not in seen:
            seen.add(user.id)
            selected.append(user)
    return selected


class BreakingAlertRunner:
    """
    Sends critical-news alerts to opted-in users.

    Usage:
        runner = BreakingAlertRunner(articles, roster, sms_sender, ledger)
        summary = runner.run_alerts()
    """

    def __init__(
        self,
        article_source: ArticleSource,
        roster_source: RosterSource,
        sender: AlertSender,
        ledger: LedgerStore,
        *,
        rate_limiter: TokenBucket | None = None,
        max_per_run: int = ALERT_MAX_PER_RUN,
        recency_hours: int = ALERT_RECENCY_HOURS,
        lookback_days: int = ALERT_LOOKBACK_DAYS,
        min_score: int = ALERT_MIN_SCORE,
    ) -> None:
        if max_per_run < 0:
            raise ValueError("max_per_run must be non-negative")
        self.article_source = article_source
        self.roster_source = roster_source
        self.sender = sender
        self.ledger = ledger
        self.rate_limiter = rate_limiter or TokenBucket.from_interval()
        self.max_per_run = max_per_run
        self.recency_hours = recency_hours
        self.lookback_days = lookback_days
        self.min_score = min_score

    def _fetch_inputs(self) -> tuple[list[Article], list[UserProfile]]:
        try:
            articles = list(self.article_source.fetch_scored_articles())
        except Exception as e:
            raise InputUnavailableError("article source", e) from e
        try:
            users = list(self.roster_source.users_with_email_enabled())
        except Exception as e:
            raise InputUnavailableError("roster source", e) from e
        return articles, users

    def run_alerts(self, test_mode: bool = False) -> AlertRunSummary:
        """
        One alert sweep over the article pool.

        Raises:
            InputUnavailableError: Article source or roster failed
        """
        run_id = uuid.uuid4().hex[:12]
        run_log = bind_run(logger, run_id)
        started_at = self.ledger.now()

        articles, roster = self._fetch_inputs()
        critical = select_critical(
            articles, started_at, recency_hours=self.recency_hours, min_score=self.min_score
        )
        recipients = alert_recipients(roster)
        run_log.info("%d critical articles; %d alert recipients", len(critical), len(recipients))

        results: list[AlertOutcome] = []
        if critical:
            for user in recipients:
                results.extend(self._alert_user(user, critical, test_mode, run_log.for_user(user.id)))

        summary = AlertRunSummary(
            run_id=run_id,
            test_mode=test_mode,
            started_at=started_at,
            completed_at=self.ledger.now(),
            critical_articles_found=len(critical),
            results=tuple(results),
        )
        run_log.info("Alerts complete: %d sent, %d failed", summary.alerts_sent, summary.alerts_failed)
        log_event(
            "alerts.run",
            run_id=run_id,
            test_mode=test_mode,
            critical=len(critical),
            sent=summary.alerts_sent,
            failed=summary.alerts_failed,
        )
        return summary

    def _alert_user(
        self,
        user: UserProfile,
        critical: Sequence[Article],
        test_mode: bool,
        log: RunLoggerAdapter,
    ) -> list[AlertOutcome]:
        try:
            sent = self.ledger.sent_keys(user.id, self.lookback_days, Channel.SMS)
        except Exception as e:
            counter("alerts.user_errors")
            log.error("Could not read alert history: %s", e)
            return []

        pending = [a for a in critical if not sent.contains(a)][: self.max_per_run]
        outcomes: list[AlertOutcome] = []
        for article in pending:
            alert_type = alert_type_for(article)
            if test_mode:
                log.info("Test mode: would send %s alert for %s", alert_type, article.id)
                outcomes.append(
                    AlertOutcome(user_id=user.id, article_id=article.id, alert_type=alert_type, success=True)
                )
                continue

            result = self._send(user, article, alert_type)
            if not result.success:
                counter("alerts.failed")
                log.warning("Alert %s failed: %s", article.id, result.error)
                outcomes.append(
                    AlertOutcome(
                        user_id=user.id,
                        article_id=article.id,
                        alert_type=alert_type,
                        success=False,
                        error=result.error or "send failed",
                    )
                )
                continue

            counter("alerts.sent")
            warning = None
            try:
                self.ledger.record(user.id, [article], channel=Channel.SMS)
            except Exception as e:
                counter("alerts.ledger_warnings")
                log.warning("Alert %s sent but not recorded: %s", article.id, e)
                warning = f"sent but not recorded; alert may repeat: {e}"
            outcomes.append(
                AlertOutcome(
                    user_id=user.id,
                    article_id=article.id,
                    alert_type=alert_type,
                    success=True,
                    warning=warning,
                )
            )
        return outcomes

    def _send(self, user: UserProfile, article: Article, alert_type: str) -> DeliveryResult:
        self.rate_limiter.acquire()
        try:
            return self.sender.send_alert(user, article, alert_type)
        except Exception as e:
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)
