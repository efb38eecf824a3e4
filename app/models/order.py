# FILE: app/models/order.py
from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Boolean,
    Numeric,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base

Money = Numeric(12, 2)

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL = "partial"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"


class ItemReturnStatus(str, enum.Enum):
    NOT_RETURNED = "not_returned"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"


class ReturnStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"


class Order(Base):
    """
    Customer order header. Items are split per fulfiller into SubOrder rows;
    Order.status is the aggregate of the sub-order statuses.
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_customer_status", "customer_id", "status"),
        Index("ix_orders_status_created", "status", "created_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, index=True, nullable=False)

    customer_id = Column(Integer,
                         ForeignKey("users.id"),
                         nullable=False,
                         index=True)
    prescription_id = Column(Integer,
                             ForeignKey("prescriptions.id"),
                             nullable=True,
                             index=True)

    status = Column(String(24), nullable=False, default=OrderStatus.PENDING.value)
    payment_method = Column(String(24), nullable=False)
    payment_status = Column(String(24),
                            nullable=False,
                            default=PaymentStatus.PENDING.value,
                            index=True)

    # Amount fields
    subtotal = Column(Money, nullable=False, default=Decimal("0"))
    delivery_fee = Column(Money, nullable=False, default=Decimal("0"))
    tax_amount = Column(Money, nullable=False, default=Decimal("0"))
    total_amount = Column(Money, nullable=False, default=Decimal("0"))
    credits_used = Column(Money, nullable=False, default=Decimal("0"))
    final_amount = Column(Money, nullable=False, default=Decimal("0"))
    refunded_amount = Column(Money, nullable=False, default=Decimal("0"))

    prescription_required = Column(Boolean, nullable=False, default=False)

    # {"street", "area", "city", "governorate", "phone", "notes"}
    delivery_address = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime,
                        nullable=False,
                        server_default=func.now(),
                        index=True)
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    customer = relationship("User", foreign_keys=[customer_id])
    cancelled_by = relationship("User", foreign_keys=[cancelled_by_id])
    prescription = relationship("Prescription")

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    sub_orders = relationship(
        "SubOrder",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SubOrder.id",
    )
    status_history = relationship(
        "OrderStatusHistory",
        primaryjoin="and_(OrderStatusHistory.order_id == Order.id, "
        "OrderStatusHistory.sub_order_id.is_(None))",
        order_by="OrderStatusHistory.id",
        viewonly=True,
    )
    return_requests = relationship(
        "ReturnRequest",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="ReturnRequest.id",
    )


class SubOrder(Base):
    """
    The part of an order one fulfiller is responsible for.
    """

    __tablename__ = "sub_orders"
    __table_args__ = (
        UniqueConstraint("order_id", "fulfiller_id",
                         name="uq_sub_orders_order_fulfiller"),
        Index("ix_sub_orders_fulfiller_status", "fulfiller_id", "status"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer,
                      ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False,
                      index=True)
    fulfiller_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    status = Column(String(24), nullable=False, default=OrderStatus.PENDING.value)
    subtotal = Column(Money, nullable=False, default=Decimal("0"))
    estimated_delivery = Column(String(64), nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    order = relationship("Order", back_populates="sub_orders")
    fulfiller = relationship("User")
    items = relationship("OrderItem",
                         back_populates="sub_order",
                         order_by="OrderItem.id")
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="sub_order",
        order_by="OrderStatusHistory.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer,
                      ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False,
                      index=True)
    sub_order_id = Column(Integer,
                          ForeignKey("sub_orders.id", ondelete="CASCADE"),
                          nullable=True,
                          index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    fulfiller_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Display snapshot so the order survives catalog edits
    product_name = Column(String(255), nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    total_price = Column(Money, nullable=False)
    prescription_required = Column(Boolean, nullable=False, default=False)

    # Returns
    return_status = Column(String(24),
                           nullable=False,
                           default=ItemReturnStatus.NOT_RETURNED.value)
    returned_quantity = Column(Integer, nullable=False, default=0)
    return_requested_at = Column(DateTime, nullable=True)
    return_reason = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")
    sub_order = relationship("SubOrder", back_populates="items")
    product = relationship("Product")


class OrderStatusHistory(Base):
    """
    Append-only status trail. sub_order_id NULL -> parent order entry.
    """

    __tablename__ = "order_status_history"
    __table_args__ = (
        Index("ix_order_status_history_order_sub", "order_id", "sub_order_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer,
                      ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False)
    sub_order_id = Column(Integer,
                          ForeignKey("sub_orders.id", ondelete="CASCADE"),
                          nullable=True)
    status = Column(String(24), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    actor_role = Column(String(32), nullable=True)
    actor_name = Column(String(120), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False)

    sub_order = relationship("SubOrder", back_populates="status_history")


class ReturnRequest(Base):
    __tablename__ = "order_return_requests"
    __table_args__ = (
        Index("ix_order_return_requests_status", "status", "requested_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer,
                      ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False,
                      index=True)
    status = Column(String(16),
                    nullable=False,
                    default=ReturnStatus.REQUESTED.value)
    refund_amount = Column(Money, nullable=False, default=Decimal("0"))
    reason = Column(Text, nullable=True)

    requested_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processed_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    admin_notes = Column(Text, nullable=True)

    order = relationship("Order", back_populates="return_requests")
    items = relationship(
        "ReturnRequestItem",
        back_populates="return_request",
        cascade="all, delete-orphan",
        order_by="ReturnRequestItem.id",
    )


class ReturnRequestItem(Base):
    __tablename__ = "order_return_request_items"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    return_request_id = Column(
        Integer,
        ForeignKey("order_return_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_item_id = Column(Integer,
                           ForeignKey("order_items.id", ondelete="CASCADE"),
                           nullable=False)
    quantity = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)

    return_request = relationship("ReturnRequest", back_populates="items")
    order_item = relationship("OrderItem")
