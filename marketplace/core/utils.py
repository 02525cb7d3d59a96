"""
Core Utilities

Shared helpers used across the application.
"""
import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def generate_order_number(now: datetime) -> str:
    """Generate display order number in format ORD-YYYYMMDD-XXXXXXXX."""
    return f"ORD-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"
