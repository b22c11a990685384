"""
Exception taxonomy for the digest pipeline.

Only InputUnavailableError (and UserNotFoundError from previews) escape to
callers.  The per-user conditions are caught by the orchestrator and folded
into the run summary.
"""

from __future__ import annotations


class DigestError(RuntimeError):
    """Base class for pipeline errors."""


class InputUnavailableError(DigestError):
    """Article source or roster source failed; the run cannot start."""

    def __init__(self, source: str, cause: BaseException | None = None):
        message = f"{source} unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.source = source


class UserProcessingError(DigestError):
    """Filtering, deduplication or assembly failed for one user."""

    def __init__(self, user_id: str, stage: str, cause: BaseException):
        super().__init__(f"{stage} failed for user {user_id}: {cause}")
        self.user_id = user_id
        self.stage = stage


class DeliveryFailure(DigestError):
    """Delivery collaborator reported (or raised) a failure."""

    def __init__(self, user_id: str, reason: str):
        super().__init__(reason)
        self.user_id = user_id


class LedgerWriteError(DigestError):
    """Recording sent articles failed after a confirmed delivery."""


class UserNotFoundError(DigestError, LookupError):
    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} is not on the digest roster")
        self.user_id = user_id
