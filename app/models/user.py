from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric
from sqlalchemy.orm import relationship
from app.db.base import Base


class User(Base):
    """
    Any platform account: customer, prescription-reader, pharmacy, vendor, admin.
    Pharmacies and vendors are fulfillers; their user id is the fulfiller id.
    """
    __tablename__ = "users"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    email = Column(String(191), unique=True,
                   nullable=False)  # <= 191, no index=True
    phone = Column(String(32), nullable=True)

    role = Column(String(32), nullable=False, index=True)  # see app.core.rbac.Role
    is_active = Column(Boolean, default=True, nullable=False)

    # Fulfiller profile (pharmacy / vendor)
    business_name = Column(String(191), nullable=True)
    city = Column(String(120), nullable=True)

    # Credit ledger balance (sum of credit_transactions.amount)
    credits = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    credit_txns = relationship(
        "CreditTxn",
        back_populates="customer",
        cascade="all, delete-orphan",
        foreign_keys="CreditTxn.customer_id",
    )
