"""Shared test fixtures and configuration.

Sets up fake environment variables before any src imports, and provides
stores and a RewardsService backed by a temp SQLite file.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("BALANCE_WINDOW", "10")

import random

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_wastewise.db")


@pytest.fixture
def user_db(tmp_db_path):
    from src.data.db import UserDB
    return UserDB(db_path=tmp_db_path, timeout=5.0)


@pytest.fixture
def task_db(tmp_db_path):
    from src.data.db import TaskDB
    return TaskDB(db_path=tmp_db_path, timeout=5.0)


@pytest.fixture
def ledger_db(tmp_db_path):
    from src.data.db import LedgerDB
    return LedgerDB(db_path=tmp_db_path, timeout=5.0)


@pytest.fixture
def notification_db(tmp_db_path):
    from src.data.db import NotificationDB
    return NotificationDB(db_path=tmp_db_path, timeout=5.0)


@pytest.fixture
def reporter(user_db):
    return user_db.add_user("reporter@example.com", "Riya")


@pytest.fixture
def collector(user_db):
    return user_db.add_user("collector@example.com", "Cole", telegram_user_id=12345)


@pytest.fixture
def other_collector(user_db):
    return user_db.add_user("other@example.com", "Olga")


@pytest.fixture
def service(tmp_db_path):
    """A RewardsService with a seeded RNG and no oracle (judgments passed in)."""
    from src.core.rewards_service import RewardsService
    return RewardsService(db_path=tmp_db_path, rng=random.Random(42))
