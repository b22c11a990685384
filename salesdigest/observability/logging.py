"""
Logging setup for the digest pipeline.

One stream handler hangs off the ``salesdigest`` package logger; module
loggers propagate to it.  Batch code logs through a RunLoggerAdapter so every
line from a run carries its run id, and user-level lines the user id.
"""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from typing import Any, Final

PACKAGE_LOGGER: Final[str] = "salesdigest"
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_configured = False


def _level_from_env() -> int:
    name = os.getenv("SALESDIGEST_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _configure_package_logger() -> None:
    global _configured
    if _configured:
        return
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    package_logger.addHandler(handler)
    package_logger.setLevel(_level_from_env())
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Module logger under the package handler (configured on first use)."""
    _configure_package_logger()
    return logging.getLogger(name)


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the batch run id (and user id when bound)."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        prefix = f"[run={extra.get('run_id', '-')}]"
        if extra.get("user_id"):
            prefix += f" [user={extra['user_id']}]"
        return f"{prefix} {msg}", kwargs

    def for_user(self, user_id: str) -> RunLoggerAdapter:
        return RunLoggerAdapter(self.logger, {**(self.extra or {}), "user_id": user_id})


def bind_run(logger: logging.Logger, run_id: str) -> RunLoggerAdapter:
    return RunLoggerAdapter(logger, {"run_id": run_id})
