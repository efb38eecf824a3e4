# FILE: app/utils/timezone.py
from __future__ import annotations

from datetime import datetime, date, timezone


def now_utc() -> datetime:
    """
    Returns a *naive* datetime representing UTC time.
    DateTime columns are naive, so we strip tzinfo before storing.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_utc() -> date:
    return now_utc().date()
