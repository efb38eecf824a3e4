from __future__ import annotations

from sqlalchemy import Column, Integer, String, UniqueConstraint

from app.db.base import Base


class NumberSeries(Base):
    """
    Sequence counters for human readable document numbers (RX..., ORD...).
    One row per (key, period_key); period_key is "" when the series never resets.
    """
    __tablename__ = "number_series"
    __table_args__ = (
        UniqueConstraint("key", "period_key", name="uq_number_series_key_period"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(32), nullable=False)
    period_key = Column(String(16), nullable=False, default="")
    next_number = Column(Integer, nullable=False, default=1)
