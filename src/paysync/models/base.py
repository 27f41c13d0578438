"""Shared column helpers for paysync models."""
import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Opaque primary key for every paysync table."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so we never store it)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
