# app/models/__init__.py
from .user import User
from .inventory import Product, FulfillerStock
from .number_series import NumberSeries
from .prescription import (
    Prescription,
    PrescriptionImage,
    PrescriptionStatusHistory,
    ProcessedMedicine,
)
from .order import (
    Order,
    OrderItem,
    SubOrder,
    OrderStatusHistory,
    ReturnRequest,
    ReturnRequestItem,
)
from .credit import CreditTxn

__all__ = [
    "User",
    "Product",
    "FulfillerStock",
    "NumberSeries",
    "Prescription",
    "PrescriptionImage",
    "PrescriptionStatusHistory",
    "ProcessedMedicine",
    "Order",
    "OrderItem",
    "SubOrder",
    "OrderStatusHistory",
    "ReturnRequest",
    "ReturnRequestItem",
    "CreditTxn",
]
