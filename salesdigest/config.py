"""Centralized configuration for the digest pipeline.

Re-exports everything from salesdigest.infrastructure.settings so callers have
one import point, then adds typed constants for storage, selection, pacing and
alerting.  Environment variable overrides use safe defaults so the pipeline
runs without extra env configuration.
"""

from __future__ import annotations

import os

from salesdigest.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "1.0.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("SALESDIGEST_DB_POOL_SIZE", "4"))
DB_POOL_TIMEOUT: float = float(os.getenv("SALESDIGEST_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("SALESDIGEST_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("SALESDIGEST_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("SALESDIGEST_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("SALESDIGEST_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("SALESDIGEST_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("SALESDIGEST_DB_RETRY_JITTER", "0.1"))

# --- Selection ---
SECTOR_ONLY_MIN_SCORE: int = int(os.getenv("SALESDIGEST_SECTOR_ONLY_MIN_SCORE", "70"))
LOOKBACK_DAYS: int = int(os.getenv("SALESDIGEST_LOOKBACK_DAYS", "3"))
DIGEST_MAX_SIZE: int = int(os.getenv("SALESDIGEST_DIGEST_MAX_SIZE", "20"))
PREVIEW_USER_LIMIT: int = 3

# --- Ledger retention ---
RETENTION_DAYS: int = int(os.getenv("SALESDIGEST_RETENTION_DAYS", "7"))

# --- Batch ---
MAX_WORKERS: int = int(os.getenv("SALESDIGEST_MAX_WORKERS", "4"))
DELIVERY_INTERVAL_SECONDS: float = float(os.getenv("SALESDIGEST_DELIVERY_INTERVAL", "0.2"))
RUN_TIMEOUT_SECONDS: float | None = (
    float(os.environ["SALESDIGEST_RUN_TIMEOUT"]) if os.getenv("SALESDIGEST_RUN_TIMEOUT") else None
)

# --- Breaking alerts ---
ALERT_MIN_SCORE: int = int(os.getenv("SALESDIGEST_ALERT_MIN_SCORE", "90"))
ALERT_MAX_PER_RUN: int = int(os.getenv("SALESDIGEST_ALERT_MAX_PER_RUN", "3"))
ALERT_RECENCY_HOURS: int = int(os.getenv("SALESDIGEST_ALERT_RECENCY_HOURS", "1"))
ALERT_LOOKBACK_DAYS: int = int(os.getenv("SALESDIGEST_ALERT_LOOKBACK_DAYS", "7"))
ALERT_CATEGORIES: frozenset[str] = frozenset(
    {"government-contracts", "mergers-acquisitions", "c-suite"}
)
