"""
Shared helpers for model ids and timestamps.
"""

from datetime import datetime, timezone
from uuid import uuid4


def new_id() -> str:
    """Generate a new record id."""
    return str(uuid4())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
