from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    DateTime,
    String,
    Text,
    Numeric,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship

from app.db.base import Base


class CreditTxnType(str, enum.Enum):
    EARNED = "earned"
    USED = "used"
    REFUND = "refund"
    BONUS = "bonus"


class CreditTxn(Base):
    """
    Customer Credit Ledger (append-only)
    - +amount => earned / refund / bonus
    - -amount => used against an order
    users.credits always equals the sum of amount for that customer.
    """
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)

    customer_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    txn_type = Column(String(20), nullable=False)  # earned | used | refund | bonus
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)

    description = Column(Text, nullable=True)
    order_id = Column(Integer,
                      ForeignKey("orders.id", ondelete="SET NULL"),
                      nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # relationships
    customer = relationship("User",
                            back_populates="credit_txns",
                            foreign_keys=[customer_id])
    order = relationship("Order")


Index("ix_credit_txn_customer_created", CreditTxn.customer_id,
      CreditTxn.created_at)
