"""
Digest pipeline - Filter -> Deduplicate -> Assemble -> Deliver -> Record.
"""

from salesdigest.digest.alerts import BreakingAlertRunner
from salesdigest.digest.assembler import DigestStage, assemble, build_digest
from salesdigest.digest.dedupe import dedupe
from salesdigest.digest.orchestrator import DigestBatchRunner, select_roster
from salesdigest.digest.rate_limit import TokenBucket
from salesdigest.digest.relevance import RelevancePolicy, filter_relevant, is_relevant

__all__ = [
    "BreakingAlertRunner",
    "DigestBatchRunner",
    "DigestStage",
    "RelevancePolicy",
    "TokenBucket",
    "assemble",
    "build_digest",
    "dedupe",
    "filter_relevant",
    "is_relevant",
    "select_roster",
]
