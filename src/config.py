"""
WasteWise — Centralized configuration.

Loads all settings from .env and validates them.
Every other module reads configuration through the `settings` singleton.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram front-end (only the bot entry point requires the token)
    TELEGRAM_BOT_TOKEN: str = ""
    ALLOWED_USER_IDS: list[int] = []   # empty → anyone may use the bot

    # Verification oracle (gemini, anthropic or openai)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""
    ORACLE_TIMEOUT_SECONDS: float = 30.0

    # SQLite
    DATABASE_PATH: str = "data/wastewise.db"
    DB_TIMEOUT_SECONDS: float = 5.0

    # Points
    REPORT_REWARD_POINTS: int = 10
    COLLECT_REWARD_MIN: int = 10
    COLLECT_REWARD_MAX: int = 59
    VERIFICATION_CONFIDENCE_THRESHOLD: float = 0.70
    BALANCE_WINDOW: int = 10     # 0 → sum the whole ledger

    # Notifications
    NOTIFICATION_POLL_SECONDS: int = 30

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("COLLECT_REWARD_MAX")
    @classmethod
    def check_reward_range(cls, v: int, info) -> int:
        low = info.data.get("COLLECT_REWARD_MIN", 1)
        if v < low:
            raise ValueError(f"COLLECT_REWARD_MAX ({v}) must be >= COLLECT_REWARD_MIN ({low})")
        return v

    @field_validator("BALANCE_WINDOW")
    @classmethod
    def check_window(cls, v: int) -> int:
        if v < 0:
            raise ValueError("BALANCE_WINDOW must be >= 0")
        return v


def _load_settings() -> Settings:
    """Load settings from environment, falling back to defaults."""
    return Settings(
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        ORACLE_TIMEOUT_SECONDS=os.getenv("ORACLE_TIMEOUT_SECONDS", "30"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/wastewise.db"),
        DB_TIMEOUT_SECONDS=os.getenv("DB_TIMEOUT_SECONDS", "5"),
        REPORT_REWARD_POINTS=os.getenv("REPORT_REWARD_POINTS", "10"),
        COLLECT_REWARD_MIN=os.getenv("COLLECT_REWARD_MIN", "10"),
        COLLECT_REWARD_MAX=os.getenv("COLLECT_REWARD_MAX", "59"),
        VERIFICATION_CONFIDENCE_THRESHOLD=os.getenv("VERIFICATION_CONFIDENCE_THRESHOLD", "0.70"),
        BALANCE_WINDOW=os.getenv("BALANCE_WINDOW", "10"),
        NOTIFICATION_POLL_SECONDS=os.getenv("NOTIFICATION_POLL_SECONDS", "30"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
