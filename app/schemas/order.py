# FILE: app/schemas/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, ConfigDict

from app.schemas.common import StatusHistoryOut

PaymentMethodIn = Literal["cash", "card", "wallet", "bank_transfer"]

# ---------- In ----------


class DeliveryAddressIn(BaseModel):
    street: str = Field(..., min_length=1)
    area: Optional[str] = None
    city: str = Field(..., min_length=1)
    governorate: Optional[str] = None
    phone: str = Field(..., min_length=3)
    notes: Optional[str] = None


class OrderItemIn(BaseModel):
    product_id: int
    fulfiller_id: int
    quantity: int = Field(..., gt=0)


class OrderCreateIn(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    delivery_address: DeliveryAddressIn
    payment_method: PaymentMethodIn = "cash"
    credits_to_use: Decimal = Field(Decimal("0"), ge=0)
    prescription_id: Optional[int] = None
    notes: Optional[str] = None


class SubOrderStatusIn(BaseModel):
    status: Literal["confirmed", "preparing", "ready", "out-for-delivery",
                    "delivered", "cancelled"]
    notes: Optional[str] = None
    estimated_delivery: Optional[str] = None


class OrderCancelIn(BaseModel):
    reason: Optional[str] = None


class ReturnItemIn(BaseModel):
    order_item_id: int
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None


class ReturnRequestIn(BaseModel):
    items: List[ReturnItemIn] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class ProcessReturnIn(BaseModel):
    decision: Literal["approved", "rejected"]
    admin_notes: Optional[str] = None


# ---------- Out ----------


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sub_order_id: Optional[int] = None
    product_id: int
    fulfiller_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    prescription_required: bool
    return_status: str
    returned_quantity: int
    return_requested_at: Optional[datetime] = None
    return_reason: Optional[str] = None


class SubOrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    fulfiller_id: int
    status: str
    subtotal: Decimal
    estimated_delivery: Optional[str] = None
    status_history: List[StatusHistoryOut] = []


class ReturnRequestItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_item_id: int
    quantity: int
    reason: Optional[str] = None


class ReturnRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    status: str
    refund_amount: Decimal
    reason: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by_id: Optional[int] = None
    admin_notes: Optional[str] = None
    items: List[ReturnRequestItemOut] = []


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    customer_id: int
    prescription_id: Optional[int] = None

    status: str
    payment_method: str
    payment_status: str

    subtotal: Decimal
    delivery_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    credits_used: Decimal
    final_amount: Decimal
    refunded_amount: Decimal

    prescription_required: bool
    delivery_address: dict
    notes: Optional[str] = None

    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[int] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    items: List[OrderItemOut] = []
    sub_orders: List[SubOrderOut] = []
    status_history: List[StatusHistoryOut] = []
    return_requests: List[ReturnRequestOut] = []


class FulfillerOrderOut(BaseModel):
    """One fulfiller's view: order header + only its own sub-order / items."""
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    order_number: str
    customer_id: int
    payment_status: str
    order_status: str
    delivery_address: dict
    sub_order: SubOrderOut
    items: List[OrderItemOut] = []
    created_at: Optional[datetime] = None


class PaymentConfirmedOut(BaseModel):
    order: OrderOut
    credits_earned: Decimal
