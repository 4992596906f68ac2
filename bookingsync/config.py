"""
Booking Sync — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from bookingsync/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Calendar provider: only "google" is supported
    CALENDAR_PROVIDER: str = "google"

    # Google Calendar: the one shared calendar all bookings live in
    GOOGLE_CALENDAR_ID: str
    GOOGLE_SERVICE_ACCOUNT_FILE: str = "service_account.json"
    GOOGLE_TOKEN_PATH: str = "token.json"

    # SQLite
    DATABASE_PATH: str = "data/bookings.db"

    # Business rules (local wall-clock times in TIMEZONE)
    TIMEZONE: str = "Europe/Berlin"
    BUSINESS_HOURS_START: str = "10:00"
    BUSINESS_HOURS_END: str = "22:00"
    SLOT_INTERVAL_MINUTES: int = 15
    BUFFER_MINUTES: int = 15
    ALLOWED_DURATIONS: list[int] = [30, 60, 120, 180]
    ALL_DAY_WINDOW_START: str = "05:00"
    ALL_DAY_WINDOW_END: str = "22:00"
    DEFAULT_LOCATION: str = ""

    # Reconciliation
    SYNC_LOOKBACK_DAYS: int = 30
    SYNC_LOOKAHEAD_DAYS: int = 90
    SYNC_INTERVAL_MINUTES: int = 5     # 0 → no in-process periodic trigger
    SYNC_MAX_WORKERS: int = 5
    EXPORT_BATCH_SIZE: int = 50
    PROVIDER_NUM_RETRIES: int = 3
    PROVIDER_TIMEOUT_SECONDS: int = 30

    # HTTP API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @field_validator("ALLOWED_DURATIONS", mode="before")
    @classmethod
    def parse_durations(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(d.strip()) for d in v.split(",") if d.strip()]
        return [30, 60, 120, 180]

    @field_validator(
        "BUSINESS_HOURS_START", "BUSINESS_HOURS_END",
        "ALL_DAY_WINDOW_START", "ALL_DAY_WINDOW_END",
    )
    @classmethod
    def check_hhmm(cls, v: str) -> str:
        hour, _, minute = v.partition(":")
        if not (hour.isdigit() and minute.isdigit()) or int(hour) > 24 or int(minute) > 59:
            raise ValueError(f"Expected HH:MM, got {v!r}")
        return v


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    calendar_id = os.getenv("GOOGLE_CALENDAR_ID", "")

    if not calendar_id or calendar_id.startswith("your-"):
        print("ERROR: GOOGLE_CALENDAR_ID is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        CALENDAR_PROVIDER=os.getenv("CALENDAR_PROVIDER", "google"),
        GOOGLE_CALENDAR_ID=calendar_id,
        GOOGLE_SERVICE_ACCOUNT_FILE=os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "service_account.json"),
        GOOGLE_TOKEN_PATH=os.getenv("GOOGLE_TOKEN_PATH", "token.json"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/bookings.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Berlin"),
        BUSINESS_HOURS_START=os.getenv("BUSINESS_HOURS_START", "10:00"),
        BUSINESS_HOURS_END=os.getenv("BUSINESS_HOURS_END", "22:00"),
        SLOT_INTERVAL_MINUTES=os.getenv("SLOT_INTERVAL_MINUTES", "15"),
        BUFFER_MINUTES=os.getenv("BUFFER_MINUTES", "15"),
        ALLOWED_DURATIONS=os.getenv("ALLOWED_DURATIONS", ""),
        ALL_DAY_WINDOW_START=os.getenv("ALL_DAY_WINDOW_START", "05:00"),
        ALL_DAY_WINDOW_END=os.getenv("ALL_DAY_WINDOW_END", "22:00"),
        DEFAULT_LOCATION=os.getenv("DEFAULT_LOCATION", ""),
        SYNC_LOOKBACK_DAYS=os.getenv("SYNC_LOOKBACK_DAYS", "30"),
        SYNC_LOOKAHEAD_DAYS=os.getenv("SYNC_LOOKAHEAD_DAYS", "90"),
        SYNC_INTERVAL_MINUTES=os.getenv("SYNC_INTERVAL_MINUTES", "5"),
        SYNC_MAX_WORKERS=os.getenv("SYNC_MAX_WORKERS", "5"),
        EXPORT_BATCH_SIZE=os.getenv("EXPORT_BATCH_SIZE", "50"),
        PROVIDER_NUM_RETRIES=os.getenv("PROVIDER_NUM_RETRIES", "3"),
        PROVIDER_TIMEOUT_SECONDS=os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"),
        API_HOST=os.getenv("API_HOST", "0.0.0.0"),
        API_PORT=os.getenv("API_PORT", "8000"),
    )


# Singleton, imported by all other modules as:
#   from bookingsync.config import settings
settings = _load_settings()
