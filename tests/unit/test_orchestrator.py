"""
Tests for the batch orchestrator.

Validates:
1. Disabled users never reach the summary; outcomes follow roster order
2. One user's failure never affects another's outcome
3. The ledger is written only after a confirmed delivery
4. Test mode, single-user runs, previews and timeouts
"""

from __future__ import annotations

import logging
import threading
import time

import pytest
from factories import (
    FakeArticleSource,
    FakeDelivery,
    FakeRoster,
    make_article,
    make_user,
)

from salesdigest.digest.orchestrator import DigestBatchRunner, select_roster
from salesdigest.digest.rate_limit import TokenBucket
from salesdigest.errors import InputUnavailableError, LedgerWriteError, UserNotFoundError
from salesdigest.observability.telemetry import get_counter
from salesdigest.storage.models import EmailPreferences, RunOptions, UserRole

ACME = frozenset({"acme"})


def _acme_user(user_id: str, **overrides):
    return make_user(user_id, UserRole.SALES, relevant_company_ids=ACME, **overrides)


def _articles():
    return [make_article(f"acme-{i}", 60 + i, companies=ACME) for i in range(3)]


def _runner(ledger, users, no_throttle, articles=None, delivery=None, **kwargs):
    return DigestBatchRunner(
        FakeArticleSource(_articles() if articles is None else articles),
        FakeRoster(users),
        delivery or FakeDelivery(),
        ledger,
        rate_limiter=no_throttle,
        **kwargs,
    )


def test_select_roster_drops_disabled_and_duplicates():
    users = [
        _acme_user("a"),
        _acme_user("b", email_preferences=EmailPreferences(enabled=False)),
        _acme_user("a"),
        _acme_user("c"),
    ]

    assert [u.id for u in select_roster(users)] == ["a", "c"]
    assert [u.id for u in select_roster(users, "c")] == ["c"]
    assert select_roster(users, "b") == []


def test_full_run_delivers_and_records(ledger, no_throttle):
    delivery = FakeDelivery()
    runner = _runner(ledger, [_acme_user("a"), _acme_user("b")], no_throttle, delivery=delivery)

    summary = runner.run_digest_batch()

    assert summary.processed_user_ids == ["a", "b"]
    assert summary.emails_succeeded == 2
    assert summary.emails_failed == 0
    assert summary.total_articles_included == 6
    assert not summary.test_mode
    assert not summary.timed_out
    assert sorted(user for user, _ in delivery.delivered) == ["a", "b"]
    assert dict(delivery.delivered)["a"] == ["acme-2", "acme-1", "acme-0"]
    assert ledger.stats("a").total_sent == 3


def test_second_run_sends_nothing_new(ledger, no_throttle):
    runner = _runner(ledger, [_acme_user("a")], no_throttle)
    runner.run_digest_batch()

    summary = runner.run_digest_batch()

    [outcome] = summary.results
    assert outcome.success
    assert outcome.article_count == 0
    assert ledger.stats("a").total_sent == 3


def test_disabled_users_never_appear(ledger, no_throttle):
    users = [_acme_user("a"), _acme_user("off", email_preferences=EmailPreferences(enabled=False))]

    summary = _runner(ledger, users, no_throttle).run_digest_batch()

    assert summary.processed_user_ids == ["a"]


def test_user_with_no_candidates_succeeds_without_delivery(ledger, no_throttle):
    delivery = FakeDelivery()
    runner = _runner(ledger, [make_user("nobody-follows-anything")], no_throttle, delivery=delivery)

    [outcome] = runner.run_digest_batch().results

    assert outcome.success
    assert outcome.article_count == 0
    assert delivery.delivered == []


def test_delivery_failure_is_isolated_and_not_recorded(ledger, no_throttle):
    delivery = FakeDelivery(fail_for={"b"}, raise_for={"c"})
    users = [_acme_user("a"), _acme_user("b"), _acme_user("c"), _acme_user("d")]

    summary = _runner(ledger, users, no_throttle, delivery=delivery).run_digest_batch()

    outcomes = {o.user_id: o for o in summary.results}
    assert summary.processed_user_ids == ["a", "b", "c", "d"]
    assert outcomes["a"].success and outcomes["d"].success
    assert not outcomes["b"].success
    assert "mailbox full" in outcomes["b"].error
    assert not outcomes["c"].success
    assert "smtp down" in outcomes["c"].error
    assert summary.emails_succeeded == 2
    assert summary.emails_failed == 2
    assert summary.total_articles_included == 12
    assert ledger.stats("b").total_sent == 0
    assert ledger.stats("c").total_sent == 0
    assert get_counter("digest.delivery_failures") == 2


def test_processing_exception_is_isolated(ledger, no_throttle, monkeypatch):
    runner = _runner(ledger, [_acme_user("a"), _acme_user("b"), _acme_user("c")], no_throttle)
    original_build = runner._build

    def flaky_build(user, articles):
        if user.id == "b":
            raise RuntimeError("profile corrupted")
        return original_build(user, articles)

    monkeypatch.setattr(runner, "_build", flaky_build)

    summary = runner.run_digest_batch()

    outcomes = {o.user_id: o for o in summary.results}
    assert outcomes["a"].success and outcomes["a"].article_count == 3
    assert outcomes["c"].success and outcomes["c"].article_count == 3
    assert not outcomes["b"].success
    assert outcomes["b"].article_count == 0
    assert "profile corrupted" in outcomes["b"].error


def test_ledger_failure_after_delivery_is_a_warning(ledger, no_throttle, monkeypatch):
    delivery = FakeDelivery()

    def failing_record(*args, **kwargs):
        raise LedgerWriteError("disk full")

    monkeypatch.setattr(ledger, "record", failing_record)

    runner = _runner(ledger, [_acme_user("a")], no_throttle, delivery=delivery)

    [outcome] = runner.run_digest_batch().results

    assert outcome.success
    assert outcome.article_count == 3
    assert "disk full" in outcome.warning
    assert delivery.delivered
    assert get_counter("digest.ledger_warnings") == 1


def test_test_mode_never_delivers_or_records(ledger, no_throttle):
    delivery = FakeDelivery()
    runner = _runner(ledger, [_acme_user("a")], no_throttle, delivery=delivery)

    summary = runner.run_digest_batch(RunOptions(test_mode=True))

    [outcome] = summary.results
    assert summary.test_mode
    assert outcome.success
    assert outcome.article_count == 3
    assert delivery.delivered == []
    assert ledger.stats("a").total_sent == 0


def test_specific_user_only(ledger, no_throttle):
    delivery = FakeDelivery()
    runner = _runner(ledger, [_acme_user("a"), _acme_user("b")], no_throttle, delivery=delivery)

    summary = runner.run_digest_batch(RunOptions(specific_user_id="b"))

    assert summary.processed_user_ids == ["b"]
    assert [user for user, _ in delivery.delivered] == ["b"]


def test_unknown_specific_user_gives_empty_summary(ledger, no_throttle):
    summary = _runner(ledger, [_acme_user("a")], no_throttle).run_digest_batch(
        RunOptions(specific_user_id="ghost")
    )

    assert summary.users_processed == 0


@pytest.mark.parametrize("failing", ["articles", "roster"])
def test_input_unavailable_aborts_before_any_user(ledger, no_throttle, failing):
    delivery = FakeDelivery()
    runner = DigestBatchRunner(
        FakeArticleSource(_articles(), error=OSError("feed down") if failing == "articles" else None),
        FakeRoster([_acme_user("a")], error=OSError("crm down") if failing == "roster" else None),
        delivery,
        ledger,
        rate_limiter=no_throttle,
    )

    with pytest.raises(InputUnavailableError):
        runner.run_digest_batch()

    assert delivery.delivered == []
    assert ledger.stats("a").total_sent == 0


def test_run_purges_expired_records(ledger, clock, no_throttle):
    ledger.record("a", [make_article("ancient")])
    clock.advance(days=10)

    _runner(ledger, [_acme_user("a")], no_throttle).run_digest_batch()

    assert "ancient" not in {r.article_id for r in ledger.records_for("a")}


def test_test_mode_does_not_purge(ledger, clock, no_throttle):
    ledger.record("a", [make_article("ancient")])
    clock.advance(days=10)

    _runner(ledger, [_acme_user("a")], no_throttle).run_digest_batch(RunOptions(test_mode=True))

    assert ledger.stats("a").total_sent == 1


def test_retention_shorter_than_lookback_rejected(ledger, no_throttle):
    with pytest.raises(ValueError):
        _runner(ledger, [], no_throttle, lookback_days=3, retention_days=2)


def test_retention_shorter_than_alert_lookback_rejected(ledger, no_throttle):
    # Alerts look back 7 days and the purge drops their records too
    with pytest.raises(ValueError):
        _runner(ledger, [], no_throttle, lookback_days=3, retention_days=5)


def test_timeout_omits_unfinished_users(ledger, no_throttle):
    release = threading.Event()

    class BlockingDelivery(FakeDelivery):
        def deliver(self, user, digest):
            if user.id == "slow":
                release.wait(5)
            return super().deliver(user, digest)

    runner = _runner(
        ledger,
        [_acme_user("fast"), _acme_user("slow")],
        no_throttle,
        delivery=BlockingDelivery(),
        max_workers=2,
    )

    try:
        summary = runner.run_digest_batch(RunOptions(timeout_seconds=0.5))
    finally:
        release.set()

    assert summary.timed_out
    assert summary.processed_user_ids == ["fast"]


def test_timeout_drops_users_queued_on_rate_limit(ledger):
    users = [_acme_user("a"), _acme_user("b"), _acme_user("c")]
    delivery = FakeDelivery()
    runner = _runner(ledger, users, TokenBucket.from_interval(0.6), delivery=delivery, max_workers=3)

    summary = runner.run_digest_batch(RunOptions(timeout_seconds=0.2))
    time.sleep(1.0)

    # Only the first worker gets a token; the rest cannot before the deadline
    assert summary.timed_out
    assert len(delivery.delivered) == 1
    delivered_id = delivery.delivered[0][0]
    assert summary.processed_user_ids == [delivered_id]
    for user in users:
        expected = 3 if user.id == delivered_id else 0
        assert ledger.stats(user.id).total_sent == expected
    assert get_counter("digest.throttle_skipped") == 2


def test_worker_waiting_on_rate_limit_never_delivers_after_timeout(ledger, caplog):
    release = threading.Event()
    bucket = TokenBucket.from_interval(0.3, sleep=lambda seconds: release.wait(5))
    delivery = FakeDelivery()
    runner = _runner(
        ledger,
        [_acme_user("a"), _acme_user("b")],
        bucket,
        delivery=delivery,
        max_workers=2,
    )

    with caplog.at_level(logging.WARNING, logger="salesdigest"):
        try:
            summary = runner.run_digest_batch(RunOptions(timeout_seconds=0.5))
        finally:
            release.set()

    deadline = time.monotonic() + 2
    while get_counter("digest.throttle_skipped") < 1 and time.monotonic() < deadline:
        time.sleep(0.01)

    assert summary.timed_out
    assert get_counter("digest.throttle_skipped") == 1
    assert len(delivery.delivered) == 1
    assert summary.processed_user_ids == [delivery.delivered[0][0]]
    assert "1 waiting on the delivery rate limit" in caplog.text


def test_preview_digest_never_writes(ledger, no_throttle):
    runner = _runner(ledger, [_acme_user("a")], no_throttle)

    digest = runner.preview_digest("a")

    assert [a.id for a in digest.articles] == ["acme-2", "acme-1", "acme-0"]
    assert ledger.stats("a").total_sent == 0


def test_preview_unknown_user(ledger, no_throttle):
    runner = _runner(ledger, [_acme_user("a")], no_throttle)

    with pytest.raises(UserNotFoundError):
        runner.preview_digest("ghost")


def test_preview_digests_limits_users(ledger, no_throttle):
    users = [_acme_user(f"u{i}") for i in range(5)]

    previews = _runner(ledger, users, no_throttle).preview_digests()

    assert [p.user_id for p in previews] == ["u0", "u1", "u2"]
