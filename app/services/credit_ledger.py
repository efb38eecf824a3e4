from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.errors import InsufficientCredits, InvalidRequest, NotFound
from app.db.session import unit_of_work
from app.models.credit import CreditTxn, CreditTxnType
from app.models.user import User
from app.utils.timezone import now_utc

MONEY = Decimal("0.01")


def D(v, default="0") -> Decimal:
    if v is None:
        return Decimal(default)
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def _round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def _post(
    db: Session,
    *,
    customer_id: int,
    txn_type: CreditTxnType,
    amount: Decimal,
    description: Optional[str],
    order_id: Optional[int],
    actor_id: Optional[int],
) -> CreditTxn:
    """
    Append one signed entry and move the balance in the same transaction.
    The balance update is conditional so a stale read can never push it below 0.
    Caller owns commit / rollback.
    """
    customer = db.get(User, customer_id)
    if customer is None:
        raise NotFound(f"Customer {customer_id} not found.")

    stmt = update(User).where(User.id == customer_id)
    if amount < 0:
        stmt = stmt.where(User.credits >= -amount)
    stmt = stmt.values(credits=User.credits + amount).execution_options(
        synchronize_session=False)

    res = db.execute(stmt)
    db.expire(customer, ["credits"])
    if res.rowcount != 1:
        balance = get_balance(db, customer_id)
        raise InsufficientCredits(
            f"Insufficient credits. Available {balance}, requested {-amount}.",
            details={"available": balance, "requested": -amount},
        )

    balance_after = get_balance(db, customer_id)
    txn = CreditTxn(
        customer_id=customer_id,
        txn_type=txn_type.value,
        amount=amount,
        balance_after=balance_after,
        description=description,
        order_id=order_id,
        created_at=now_utc(),
        created_by=actor_id,
    )
    db.add(txn)
    db.flush()
    return txn


def _positive(amount) -> Decimal:
    amt = _round_money(D(amount))
    if amt <= 0:
        raise InvalidRequest("Credit amount must be greater than 0.")
    return amt


def earn(db: Session,
         customer_id: int,
         amount,
         description: str,
         order_id: Optional[int] = None,
         actor_id: Optional[int] = None) -> CreditTxn:
    return _post(db,
                 customer_id=customer_id,
                 txn_type=CreditTxnType.EARNED,
                 amount=_positive(amount),
                 description=description,
                 order_id=order_id,
                 actor_id=actor_id)


def use(db: Session,
        customer_id: int,
        amount,
        description: str,
        order_id: Optional[int] = None,
        actor_id: Optional[int] = None) -> CreditTxn:
    return _post(db,
                 customer_id=customer_id,
                 txn_type=CreditTxnType.USED,
                 amount=-_positive(amount),
                 description=description,
                 order_id=order_id,
                 actor_id=actor_id)


def refund(db: Session,
           customer_id: int,
           amount,
           description: str,
           order_id: Optional[int] = None,
           actor_id: Optional[int] = None) -> CreditTxn:
    return _post(db,
                 customer_id=customer_id,
                 txn_type=CreditTxnType.REFUND,
                 amount=_positive(amount),
                 description=description,
                 order_id=order_id,
                 actor_id=actor_id)


def bonus(db: Session,
          customer_id: int,
          amount,
          description: str,
          order_id: Optional[int] = None,
          actor_id: Optional[int] = None) -> CreditTxn:
    return _post(db,
                 customer_id=customer_id,
                 txn_type=CreditTxnType.BONUS,
                 amount=_positive(amount),
                 description=description,
                 order_id=order_id,
                 actor_id=actor_id)


def grant_bonus(db: Session, *, customer_id: int, amount, description: str,
                admin_id: int) -> CreditTxn:
    """Admin manual grant, committed on its own."""
    with unit_of_work(db):
        txn = bonus(db,
                    customer_id,
                    amount,
                    description or "Bonus credits",
                    actor_id=admin_id)
    db.refresh(txn)
    return txn


def get_balance(db: Session, customer_id: int) -> Decimal:
    bal = db.execute(select(User.credits).where(
        User.id == customer_id)).scalar_one_or_none()
    if bal is None:
        raise NotFound(f"Customer {customer_id} not found.")
    return D(bal)


def history(db: Session,
            customer_id: int,
            limit: Optional[int] = None) -> List[CreditTxn]:
    """Most recent first."""
    q = (db.query(CreditTxn).filter(
        CreditTxn.customer_id == customer_id).order_by(
            CreditTxn.created_at.desc(), CreditTxn.id.desc()))
    if limit:
        q = q.limit(limit)
    return q.all()


def get_credit_totals(db: Session, customer_id: int) -> dict:
    rows = (db.query(CreditTxn.txn_type,
                     func.coalesce(func.sum(CreditTxn.amount), 0)).filter(
                         CreditTxn.customer_id == customer_id).group_by(
                             CreditTxn.txn_type).all())
    by_type = {t: D(total) for t, total in rows}

    ledger_sum = sum(by_type.values(), Decimal("0"))
    return {
        "balance": get_balance(db, customer_id),
        "ledger_sum": ledger_sum,
        "total_earned": by_type.get(CreditTxnType.EARNED.value, Decimal("0")),
        "total_used": abs(by_type.get(CreditTxnType.USED.value, Decimal("0"))),
        "total_refund": by_type.get(CreditTxnType.REFUND.value, Decimal("0")),
        "total_bonus": by_type.get(CreditTxnType.BONUS.value, Decimal("0")),
    }
