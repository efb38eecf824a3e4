from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship

from app.db.base import Base

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class Product(Base):
    """
    Purchasable catalog item (medicine or general product).
    """
    __tablename__ = "products"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=True)
    manufacturer = Column(String(191), nullable=True)
    strength = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)

    requires_prescription = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FulfillerStock(Base):
    """
    Live inventory of one product at one fulfiller (pharmacy / vendor).
    quantity is decremented on payment confirmation.
    """
    __tablename__ = "fulfiller_stock"
    __table_args__ = (
        UniqueConstraint("fulfiller_id", "product_id",
                         name="uq_fulfiller_stock_fulfiller_product"),
        Index("ix_fulfiller_stock_product", "product_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    fulfiller_id = Column(Integer,
                          ForeignKey("users.id", ondelete="CASCADE"),
                          nullable=False,
                          index=True)
    product_id = Column(Integer,
                        ForeignKey("products.id", ondelete="CASCADE"),
                        nullable=False)

    price = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    quantity = Column(Integer, nullable=False, default=0)
    expiry_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow,
                        nullable=False)

    product = relationship("Product", lazy="joined")
    fulfiller = relationship("User")
