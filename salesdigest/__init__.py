"""SalesDigest - personalized sales news digests with a sent-article ledger"""

from __future__ import annotations

__version__ = "1.0.0"

# Lazy imports so `salesdigest.config` stays importable without the storage layer
def __getattr__(name: str):
    if name in ("DigestBatchRunner", "BreakingAlertRunner"):
        from salesdigest.digest import alerts, orchestrator
        if name == "DigestBatchRunner":
            return orchestrator.DigestBatchRunner
        return alerts.BreakingAlertRunner

    if name == "SQLiteLedger":
        from salesdigest.storage.ledger import SQLiteLedger
        return SQLiteLedger

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "DigestBatchRunner",
    "BreakingAlertRunner",
    "SQLiteLedger",
]
