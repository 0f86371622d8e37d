# backend/shift_settlement/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/shift_settlement.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///shift_settlement.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Whole-settlement budget; the transaction rolls back once exceeded
    SETTLEMENT_TIMEOUT_SECONDS = int(os.environ.get("SETTLEMENT_TIMEOUT_SECONDS", "60"))

    # Optional override for the app logger level (e.g. "DEBUG")
    SETTLEMENT_LOG_LEVEL = os.environ.get("SETTLEMENT_LOG_LEVEL")
