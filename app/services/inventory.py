# FILE: app/services/inventory.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.errors import OutOfStock
from app.models.inventory import FulfillerStock, Product
from app.utils.timezone import today_utc

logger = logging.getLogger(__name__)


@dataclass
class StockQuote:
    fulfiller_id: int
    product_id: int
    product_name: str
    unit_price: Decimal
    available_qty: int
    expiry_date: Optional[date]
    requires_prescription: bool


def get_stock(db: Session, fulfiller_id: int,
              product_id: int) -> Optional[FulfillerStock]:
    return (db.query(FulfillerStock).filter(
        FulfillerStock.fulfiller_id == fulfiller_id,
        FulfillerStock.product_id == product_id,
        FulfillerStock.is_active.is_(True),
    ).first())


def is_sellable(stock: Optional[FulfillerStock],
                qty: int,
                *,
                today: Optional[date] = None) -> bool:
    if stock is None:
        return False
    today = today or today_utc()
    if stock.expiry_date is not None and stock.expiry_date <= today:
        return False
    return int(stock.quantity or 0) >= int(qty)


def quote(db: Session, fulfiller_id: int, product_id: int,
          qty: int) -> StockQuote:
    """
    Live price / availability for one (fulfiller, product).
    Raises OutOfStock when the quantity is not there or the stock has expired.
    """
    stock = get_stock(db, fulfiller_id, product_id)
    product: Optional[Product] = stock.product if stock else db.get(
        Product, product_id)
    name = product.name if product else f"product {product_id}"

    if stock is None or product is None or not product.is_active:
        raise OutOfStock(
            f"{name} is not sold by fulfiller {fulfiller_id}.",
            details={"product_id": product_id, "fulfiller_id": fulfiller_id},
        )
    if not is_sellable(stock, qty):
        raise OutOfStock(
            f"{name} not available or insufficient quantity at the selected "
            f"fulfiller. Available {stock.quantity}, requested {qty}.",
            details={
                "product_id": product_id,
                "fulfiller_id": fulfiller_id,
                "available": int(stock.quantity or 0),
                "requested": int(qty),
            },
        )

    return StockQuote(
        fulfiller_id=fulfiller_id,
        product_id=product_id,
        product_name=name,
        unit_price=Decimal(stock.price or 0),
        available_qty=int(stock.quantity or 0),
        expiry_date=stock.expiry_date,
        requires_prescription=bool(product.requires_prescription),
    )


def try_decrement(db: Session, fulfiller_id: int, product_id: int,
                  qty: int) -> bool:
    """
    Best-effort decrement: only applied when enough stock is still there.
    Returns False (and logs) instead of failing when a concurrent order got there first.
    """
    res = db.execute(
        update(FulfillerStock).where(
            FulfillerStock.fulfiller_id == fulfiller_id,
            FulfillerStock.product_id == product_id,
            FulfillerStock.quantity >= qty,
        ).values(quantity=FulfillerStock.quantity - qty).execution_options(
            synchronize_session=False))
    if res.rowcount != 1:
        logger.warning(
            "Skipped stock decrement: fulfiller=%s product=%s qty=%s",
            fulfiller_id, product_id, qty)
        return False
    return True
