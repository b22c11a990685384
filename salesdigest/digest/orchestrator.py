"""Batch orchestrator - one digest run over the whole roster.

Run:      Fetching -> PerUserProcessing -> Complete
Per user: Filtering -> Deduplicating -> Assembling -> Delivering -> Recording

Failure isolation is the central contract: anything that goes wrong for one
user becomes that user's outcome and the rest of the roster carries on.  Only
a failed article feed or roster aborts the run, before any user is touched.

The ledger is written only after the delivery collaborator confirms success,
so a failed send leaves the same articles eligible for the next run.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from enum import Enum

from salesdigest.config import (
    ALERT_LOOKBACK_DAYS,
    DIGEST_MAX_SIZE,
    LOOKBACK_DAYS,
    MAX_WORKERS,
    PREVIEW_USER_LIMIT,
    RETENTION_DAYS,
    RUN_TIMEOUT_SECONDS,
)
from salesdigest.contracts import ArticleSource, DigestDelivery, LedgerStore, RosterSource
from salesdigest.digest.assembler import DigestStage, build_digest
from salesdigest.digest.rate_limit import TokenBucket
from salesdigest.digest.relevance import DEFAULT_POLICY, RelevancePolicy
from salesdigest.errors import DeliveryFailure, InputUnavailableError, UserNotFoundError
from salesdigest.observability.logging import RunLoggerAdapter, bind_run, get_logger
from salesdigest.observability.telemetry import counter, log_event, time_block
from salesdigest.storage.models import (
    Article,
    DeliveryResult,
    DigestResult,
    RunOptions,
    RunSummary,
    UserOutcome,
    UserProfile,
)

logger = get_logger(__name__)


class RunState(str, Enum):
    FETCHING = "fetching"
    PROCESSING = "processing"
    COMPLETE = "complete"


def select_roster(users: Sequence[UserProfile], specific_user_id: str | None = None) -> list[UserProfile]:
    """
    Enabled users, each at most once, in roster order.

    The roster source is expected to return only enabled users; disabled
    profiles are dropped here as well so they can never reach a summary.
    """
    selected: list[UserProfile] = []
    seen: set[str] = set()
    for user in users:
        if not user.email_preferences.enabled or user.id in seen:
            continue
        if specific_user_id is not None and user.id != specific_user_id:
            continue
        seen.add(user.id)
        selected.append(user)
    return selected


class _RunControl:
    """Deadline and cancellation shared by one run's worker threads."""

    def __init__(self, timeout: float | None) -> None:
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self.cancelled = threading.Event()
        self._lock = threading.Lock()
        self.waiting = 0
        self.skipped = 0

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @contextmanager
    def waiting_for_slot(self) -> Iterator[None]:
        with self._lock:
            self.waiting += 1
        try:
            yield
        finally:
            with self._lock:
                self.waiting -= 1

    def mark_skipped(self) -> None:
        with self._lock:
            self.skipped += 1


class DigestBatchRunner:
    """
    Runs personalized digests for every enabled user.

    All collaborators are injected; the runner keeps no state between runs
    beyond what the ledger persists.
    """

    def __init__(
        self,
        article_source: ArticleSource,
        roster_source: RosterSource,
        delivery: DigestDelivery,
        ledger: LedgerStore,
        *,
        rate_limiter: TokenBucket | None = None,
        policy: RelevancePolicy = DEFAULT_POLICY,
        lookback_days: int = LOOKBACK_DAYS,
        max_size: int = DIGEST_MAX_SIZE,
        max_workers: int = MAX_WORKERS,
        retention_days: int = RETENTION_DAYS,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        # The purge also drops alert records, so the alert window counts too
        if retention_days < max(lookback_days, ALERT_LOOKBACK_DAYS):
            raise ValueError("retention_days must cover the digest and alert lookback windows")
        self.article_source = article_source
        self.roster_source = roster_source
        self.delivery = delivery
        self.ledger = ledger
        self.rate_limiter = rate_limiter or TokenBucket.from_interval()
        self.policy = policy
        self.lookback_days = lookback_days
        self.max_size = max_size
        self.max_workers = max_workers
        self.retention_days = retention_days

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _fetch_inputs(self) -> tuple[list[Article], list[UserProfile]]:
        """
        Raises:
            InputUnavailableError: If either source fails
        """
        try:
            articles = list(self.article_source.fetch_scored_articles())
        except Exception as e:
            counter("digest.input_unavailable")
            raise InputUnavailableError("article source", e) from e

        try:
            users = list(self.roster_source.users_with_email_enabled())
        except Exception as e:
            counter("digest.input_unavailable")
            raise InputUnavailableError("roster source", e) from e

        return articles, users

    def _build(self, user: UserProfile, articles: Sequence[Article]) -> DigestResult:
        return build_digest(
            user,
            articles,
            self.ledger,
            policy=self.policy,
            lookback_days=self.lookback_days,
            max_size=self.max_size,
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def run_digest_batch(self, options: RunOptions | None = None) -> RunSummary:
        """
        Process the roster once.

        Returns:
            RunSummary with one outcome per user that finished

        Raises:
            InputUnavailableError: Article source or roster failed
        """
        options = options or RunOptions()
        timeout = options.timeout_seconds if options.timeout_seconds is not None else RUN_TIMEOUT_SECONDS
        run_id = uuid.uuid4().hex[:12]
        run_log = bind_run(logger, run_id)
        started_at = self.ledger.now()

        run_log.info(
            "Starting %s digest run at %s",
            "TEST" if options.test_mode else "PRODUCTION",
            started_at.isoformat(),
        )
        log_event("digest.run.state", run_id=run_id, state=RunState.FETCHING.value)

        with time_block("digest.run.fetch"):
            articles, roster = self._fetch_inputs()

        users = select_roster(roster, options.specific_user_id)
        run_log.info("Fetched %d articles; processing %d users", len(articles), len(users))
        log_event("digest.run.state", run_id=run_id, state=RunState.PROCESSING.value, users=len(users))

        # One calendar day for every record written by this run
        digest_date = self.ledger.digest_date_for(started_at)

        with time_block("digest.run.total"):
            outcomes, timed_out = self._process_roster(
                users, articles, options.test_mode, digest_date, timeout, run_log
            )

        if not options.test_mode:
            self._purge_expired(run_log)

        summary = RunSummary(
            run_id=run_id,
            test_mode=options.test_mode,
            started_at=started_at,
            completed_at=self.ledger.now(),
            timed_out=timed_out,
            results=tuple(outcomes),
        )

        run_log.info(
            "Complete: %d sent, %d failed, %d total articles%s",
            summary.emails_succeeded,
            summary.emails_failed,
            summary.total_articles_included,
            " (timed out)" if timed_out else "",
        )
        log_event(
            "digest.run.state",
            run_id=run_id,
            state=RunState.COMPLETE.value,
            users_processed=summary.users_processed,
            succeeded=summary.emails_succeeded,
            failed=summary.emails_failed,
            timed_out=timed_out,
        )
        return summary

    def _process_roster(
        self,
        users: list[UserProfile],
        articles: list[Article],
        test_mode: bool,
        digest_date: str,
        timeout: float | None,
        run_log: RunLoggerAdapter,
    ) -> tuple[list[UserOutcome], bool]:
        """
        Fan users out over a bounded worker pool.

        On timeout, users not yet started are cancelled and omitted, and users
        still waiting for a delivery slot are dropped without delivering.
        Users already delivering are abandoned; whatever they record stays.
        Outcomes come back in roster order.
        """
        if not users:
            return [], False

        control = _RunControl(timeout)
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(users)),
            thread_name_prefix="digest-user",
        )
        future_to_idx = {
            executor.submit(
                self._process_user, user, articles, test_mode, digest_date, control, run_log
            ): idx
            for idx, user in enumerate(users)
        }

        try:
            done, not_done = concurrent.futures.wait(future_to_idx, timeout=timeout)
            if not_done:
                control.cancelled.set()
                for future in not_done:
                    future.cancel()
        finally:
            executor.shutdown(wait=not not_done, cancel_futures=True)

        timed_out = bool(not_done) or control.skipped > 0
        if timed_out:
            counter("digest.run.timeouts")
            run_log.warning(
                "Run timed out after %.1fs; %d users not completed (%d waiting on the delivery "
                "rate limit), %d skipped at the rate limit",
                timeout or 0.0,
                len(not_done),
                control.waiting,
                control.skipped,
            )

        indexed: list[tuple[int, UserOutcome]] = []
        for future in done:
            outcome = future.result()
            if outcome is not None:
                indexed.append((future_to_idx[future], outcome))
        indexed.sort(key=lambda pair: pair[0])
        return [outcome for _, outcome in indexed], timed_out

    def _process_user(
        self,
        user: UserProfile,
        articles: Sequence[Article],
        test_mode: bool,
        digest_date: str,
        control: _RunControl,
        run_log: RunLoggerAdapter,
    ) -> UserOutcome | None:
        """
        Run one user through every stage; never raises.

        Returns None if the run ended before this user started delivering.
        """
        log = run_log.for_user(user.id)
        if control.cancelled.is_set():
            return None

        try:
            with time_block("digest.user"):
                return self._run_user_stages(user, articles, test_mode, digest_date, control, log)
        except Exception as e:
            counter("digest.user_errors")
            log.error("Error processing user: %s", e, exc_info=True)
            return UserOutcome(user_id=user.id, success=False, article_count=0, error=str(e))

    def _run_user_stages(
        self,
        user: UserProfile,
        articles: Sequence[Article],
        test_mode: bool,
        digest_date: str,
        control: _RunControl,
        log: RunLoggerAdapter,
    ) -> UserOutcome | None:
        digest = self._build(user, articles)
        count = digest.article_count

        if digest.is_empty:
            log.info("No new articles (%d already sent)", digest.suppressed_count)
            counter("digest.empty")
            return UserOutcome(user_id=user.id, success=True, article_count=0)

        if test_mode:
            log.info("Test mode: would send %d articles", count)
            return UserOutcome(user_id=user.id, success=True, article_count=count)

        if control.cancelled.is_set() or not self._await_delivery_slot(control, log):
            return None

        result = self._deliver(user, digest)
        if not result.success:
            failure = DeliveryFailure(user.id, result.error or "delivery failed")
            counter("digest.delivery_failures")
            log.warning("Delivery failed: %s", failure)
            return UserOutcome(user_id=user.id, success=False, article_count=count, error=str(failure))

        counter("digest.delivered")
        warning = self._record(user, digest, digest_date, log)
        return UserOutcome(user_id=user.id, success=True, article_count=count, warning=warning)

    def _await_delivery_slot(self, control: _RunControl, log: RunLoggerAdapter) -> bool:
        """Wait for a rate-limit token; False if the run deadline passes first."""
        with control.waiting_for_slot():
            acquired = self.rate_limiter.acquire(timeout=control.remaining())
        if acquired and not control.cancelled.is_set():
            return True
        control.mark_skipped()
        counter("digest.throttle_skipped")
        log.info("Skipped: run deadline reached while waiting for a delivery slot")
        return False

    def _deliver(self, user: UserProfile, digest: DigestResult) -> DeliveryResult:
        try:
            with time_block("digest.deliver"):
                return self.delivery.deliver(user, digest)
        except Exception as e:
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

    def _record(
        self, user: UserProfile, digest: DigestResult, digest_date: str, log: RunLoggerAdapter
    ) -> str | None:
        """Best-effort ledger write; a failure becomes a warning on a successful outcome."""
        try:
            self.ledger.record(user.id, digest.articles, digest_date=digest_date)
        except Exception as e:
            counter("digest.ledger_warnings")
            log.warning("%s stage failed after delivery: %s", DigestStage.RECORDING.value, e)
            return f"delivered but not recorded; articles may repeat next run: {e}"
        return None

    def _purge_expired(self, run_log: RunLoggerAdapter) -> None:
        """Lazy retention; the run has already succeeded, so failures only log."""
        try:
            purged = self.ledger.purge_older_than(self.retention_days)
        except Exception as e:
            counter("ledger.purge_failures")
            run_log.warning("Ledger purge failed: %s", e)
            return
        if purged:
            run_log.info("Purged %d ledger records older than %d days", purged, self.retention_days)

    # ------------------------------------------------------------------
    # Previews (never write the ledger)
    # ------------------------------------------------------------------

    def preview_digest(self, user_id: str) -> DigestResult:
        """
        Digest the user would receive right now.

        Raises:
            InputUnavailableError: Article source or roster failed
            UserNotFoundError: The user is not an enabled roster member
            UserProcessingError: Building the digest failed
        """
        articles, roster = self._fetch_inputs()
        users = select_roster(roster, user_id)
        if not users:
            raise UserNotFoundError(user_id)
        return self._build(users[0], articles)

    def preview_digests(self, limit: int = PREVIEW_USER_LIMIT) -> list[DigestResult]:
        """Previews for the first ``limit`` roster users; users that fail are skipped."""
        articles, roster = self._fetch_inputs()
        previews: list[DigestResult] = []
        for user in select_roster(roster)[:limit]:
            try:
                previews.append(self._build(user, articles))
            except Exception as e:
                logger.warning("Preview failed for user %s: %s", user.id, e)
        return previews
