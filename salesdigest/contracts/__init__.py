"""
Type Contracts for salesdigest

Protocol-based contracts for everything the pipeline consumes but does not
implement: the scored article feed, the user roster, the delivery transports
and the ledger store.

Purpose:
- Keep digest/ free of any concrete feed, database or transport
- Let tests inject fakes that satisfy the same structural types

Architecture:
    article feed   roster   email/SMS senders
          \\          |          /
           v         v         v
          contracts/ (protocols only, no logic)
                     ^
                     |
                  digest/
"""

from salesdigest.contracts.collaborators import (
    AlertSender,
    ArticleSource,
    DigestDelivery,
    RosterSource,
)
from salesdigest.contracts.ledger import LedgerStore

__all__ = [
    # Inputs
    "ArticleSource",
    "RosterSource",
    # Outputs
    "DigestDelivery",
    "AlertSender",
    # Storage
    "LedgerStore",
]
