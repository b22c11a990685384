"""
Digest Assembler - orders a user's candidates and caps the digest.

Ordering is total and deterministic: relevance score descending, then the
more recently published article, then article id.  Re-assembling the same
candidates always yields the same digest.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum

from salesdigest.config import DIGEST_MAX_SIZE, LOOKBACK_DAYS
from salesdigest.contracts.ledger import LedgerStore
from salesdigest.digest.dedupe import dedupe
from salesdigest.digest.relevance import DEFAULT_POLICY, RelevancePolicy, filter_relevant
from salesdigest.errors import UserProcessingError
from salesdigest.storage.models import Article, DigestResult, UserProfile


class DigestStage(str, Enum):
    """Per-user stage reached while building a digest."""

    FILTERING = "filtering"
    DEDUPLICATING = "deduplicating"
    ASSEMBLING = "assembling"
    DELIVERING = "delivering"
    RECORDING = "recording"


def _ordering_key(article: Article) -> tuple[int, float, str]:
    return (-article.relevance_score, -article.published_at.timestamp(), article.id)


def assemble(candidates: Iterable[Article], max_size: int = DIGEST_MAX_SIZE) -> list[Article]:
    """Sort candidates by relevance and truncate to ``max_size``. Empty in, empty out."""
    if max_size < 0:
        raise ValueError("max_size must be non-negative")
    return sorted(candidates, key=_ordering_key)[:max_size]


def build_digest(
    user: UserProfile,
    articles: Sequence[Article],
    ledger: LedgerStore,
    *,
    policy: RelevancePolicy = DEFAULT_POLICY,
    lookback_days: int = LOOKBACK_DAYS,
    max_size: int = DIGEST_MAX_SIZE,
    generated_at: datetime | None = None,
) -> DigestResult:
    """
    Filter -> Deduplicate -> Assemble for one user.

    Never writes to the ledger.

    Raises:
        UserProcessingError: tagged with the stage that failed
    """
    stage = DigestStage.FILTERING
    try:
        relevant = filter_relevant(user, articles, policy)
        stage = DigestStage.DEDUPLICATING
        unsent = dedupe(user, relevant, ledger, lookback_days)
        stage = DigestStage.ASSEMBLING
        ordered = assemble(unsent, max_size)
    except Exception as e:
        raise UserProcessingError(user.id, stage.value, e) from e

    return DigestResult(
        user_id=user.id,
        articles=tuple(ordered),
        generated_at=generated_at or ledger.now(),
        candidate_count=len(relevant),
        suppressed_count=len(relevant) - len(unsent),
    )
