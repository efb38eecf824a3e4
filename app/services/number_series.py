from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.models.number_series import NumberSeries
from app.utils.timezone import now_utc


def next_number(
    db: Session,
    *,
    key: str,
    prefix: str,
    period_key: str = "",
    padding: int = 6,
) -> str:
    """
    Row-locked counter; two requests never get the same number.
    Returns f"{prefix}{seq:0{padding}d}".
    """
    row = (db.query(NumberSeries).filter(
        NumberSeries.key == key,
        NumberSeries.period_key == period_key,
    ).with_for_update().first())

    if not row:
        row = NumberSeries(key=key, period_key=period_key, next_number=1)
        db.add(row)
        db.flush()

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    return f"{prefix}{str(n).zfill(padding)}"


def next_prescription_number(db: Session,
                             on: Optional[datetime] = None) -> str:
    """
    RX<year><seq>, sequence restarts every year.
    """
    year = (on or now_utc()).strftime("%Y")
    return next_number(db, key="RX", prefix=f"RX{year}", period_key=year)


def next_order_number(db: Session, on: Optional[datetime] = None) -> str:
    """
    ORD<yyyymmdd><seq>, sequence restarts every day.
    """
    day = (on or now_utc()).strftime("%Y%m%d")
    return next_number(db, key="ORD", prefix=f"ORD{day}", period_key=day)
