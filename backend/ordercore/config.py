# backend/ordercore/config.py
from __future__ import annotations
import os


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/ordercore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///ordercore.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bounded retry for lock contention / optimistic version conflicts.
    ORDERCORE_RETRY_ATTEMPTS = int(os.environ.get("ORDERCORE_RETRY_ATTEMPTS", "3"))
    ORDERCORE_RETRY_BACKOFF = float(os.environ.get("ORDERCORE_RETRY_BACKOFF", "0.1"))

    # Order statuses that hand a snapshot to the archive.
    ORDERCORE_ARCHIVE_ORDER_STATUSES = _csv(
        os.environ.get("ORDERCORE_ARCHIVE_ORDER_STATUSES", "cancelled,refunded")
    )
    ORDERCORE_ARCHIVE_LEAD_STATUSES = ("CANCELLED",)
