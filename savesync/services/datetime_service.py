"""Timestamp helpers: all catalog and manifest times are UTC."""

from __future__ import annotations

from datetime import datetime, timezone

# Manifest file names sort chronologically in this format.
RUN_ID_FORMAT = "%Y%m%dT%H%M%S.%fZ"


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization.

    Naive datetimes (as read back from SQLite) are taken to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def format_run_id(dt: datetime) -> str:
    """Format a run start time as a sortable, filesystem-safe identifier."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(RUN_ID_FORMAT)
