"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
SALESDIGEST_ROOT = Path(__file__).parent.parent

# Environment
ENV = os.getenv("SALESDIGEST_ENV", "development")
DEBUG = ENV == "development"

LOG_LEVEL = os.getenv("SALESDIGEST_LOG_LEVEL", "INFO")

# Ledger storage
DATA_DIR = Path(os.getenv("SALESDIGEST_DATA_DIR", str(SALESDIGEST_ROOT / "data")))
LEDGER_DB_PATH = Path(os.getenv("SALESDIGEST_DB_PATH", str(DATA_DIR / "ledger.db")))

# Calendar day of a send is computed in this zone for the whole run
PROCESSING_TIMEZONE = os.getenv("SALESDIGEST_TIMEZONE", "UTC")


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"
