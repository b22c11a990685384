"""
Relevance filter - decides whether an article belongs in a user's digest.

Rules, in order:
1. Below the user's minimum score: never included.
2. Executives: everything above the bar, narrowed only by followed sectors
   when they declared any.
3. Sales / managers: an article about one of their accounts clears at their
   own threshold; an article that only matches a followed sector needs the
   stronger sector-only score.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from salesdigest.config import SECTOR_ONLY_MIN_SCORE
from salesdigest.storage.models import Article, UserProfile, UserRole


@dataclass(frozen=True)
class RelevancePolicy:
    sector_only_min_score: int = SECTOR_ONLY_MIN_SCORE

    def __post_init__(self) -> None:
        if not 0 <= self.sector_only_min_score <= 100:
            raise ValueError("sector_only_min_score must be between 0 and 100")


DEFAULT_POLICY = RelevancePolicy()


def is_relevant(user: UserProfile, article: Article, policy: RelevancePolicy = DEFAULT_POLICY) -> bool:
    if article.relevance_score < user.min_relevance_score:
        return False

    if user.role == UserRole.EXECUTIVE:
        return not user.followed_sectors or bool(user.followed_sectors & article.sectors)

    if article.companies & user.relevant_company_ids:
        return True

    in_followed_sector = bool(article.sectors & user.followed_sectors)
    return in_followed_sector and article.relevance_score >= policy.sector_only_min_score


def filter_relevant(
    user: UserProfile,
    articles: Iterable[Article],
    policy: RelevancePolicy = DEFAULT_POLICY,
) -> list[Article]:
    """Relevant articles for ``user``, in input order."""
    return [article for article in articles if is_relevant(user, article, policy)]
