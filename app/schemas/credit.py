# FILE: app/schemas/credit.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreditTxnOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    txn_type: str
    amount: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    order_id: Optional[int] = None
    created_at: datetime
    created_by: Optional[int] = None


class CreditSummaryOut(BaseModel):
    balance: Decimal
    ledger_sum: Decimal
    total_earned: Decimal
    total_used: Decimal
    total_refund: Decimal
    total_bonus: Decimal
    history: List[CreditTxnOut] = []


class BonusIn(BaseModel):
    customer_id: int
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None
