# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic settings during import-time initialization, regardless of shell env.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_AUTO_MIGRATE"] = "false"
os.environ["JWT_SECRET"] = "test-jwt-secret-0123456789-0123456789"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["RATE_LIMIT_BACKEND"] = "memory"
