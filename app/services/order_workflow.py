# FILE: app/services/order_workflow.py
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.core.errors import (
    AlreadyPaid,
    DuplicateReturnRequest,
    InsufficientCredits,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    ReturnWindowExpired,
    Unauthorized,
)
from app.core.rbac import (
    Actor,
    Capability,
    Role,
    as_role,
    require_capability,
)
from app.db.session import unit_of_work
from app.models.order import (
    ItemReturnStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    ReturnRequest,
    ReturnRequestItem,
    ReturnStatus,
    SubOrder,
)
from app.models.prescription import Prescription, PrescriptionStatus
from app.schemas.order import OrderCreateIn, ReturnRequestIn
from app.services import credit_ledger, inventory
from app.services.credit_ledger import D, _round_money
from app.services.notifier import (
    ADMIN,
    Notifier,
    customer_room,
    fulfiller_room,
    get_notifier,
)
from app.services.number_series import next_order_number
from app.services.transitions import (
    EntityKind,
    TERMINAL_ORDER,
    ensure_transition,
)
from app.utils.timezone import now_utc

logger = logging.getLogger(__name__)

OS = OrderStatus

_SHIPPED = frozenset({OS.OUT_FOR_DELIVERY.value, OS.DELIVERED.value})
_READY_OR_BEYOND = frozenset(
    {OS.READY.value, OS.OUT_FOR_DELIVERY.value, OS.DELIVERED.value})
_PAID_STATES = frozenset(
    {PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value})


# =========================
# Pure helpers
# =========================
def tax_for(subtotal: Decimal) -> Decimal:
    return _round_money(D(subtotal) * D(settings.TAX_PERCENT) / Decimal("100"))


def price_order(subtotal: Decimal) -> Dict[str, Decimal]:
    """delivery fee (waived at / above threshold), flat tax, total"""
    subtotal = _round_money(D(subtotal))
    if subtotal >= D(settings.FREE_DELIVERY_THRESHOLD):
        delivery_fee = Decimal("0.00")
    else:
        delivery_fee = _round_money(D(settings.DELIVERY_FEE))
    tax_amount = tax_for(subtotal)
    return {
        "subtotal": subtotal,
        "delivery_fee": delivery_fee,
        "tax_amount": tax_amount,
        "total_amount": subtotal + delivery_fee + tax_amount,
    }


def credits_for(total_amount: Decimal) -> Decimal:
    """Earned credits, floored to whole credits."""
    raw = D(total_amount) * D(settings.CREDIT_EARN_PERCENT) / Decimal("100")
    return raw.to_integral_value(rounding=ROUND_FLOOR)


def aggregate_status(current: str, sub_statuses: Iterable[str]) -> str:
    """
    Parent status derived from its sub-orders:
      delivered         all delivered
      out-for-delivery  any out-for-delivery / delivered
      ready             all ready or beyond
      otherwise         unchanged
    Cancelled sub-orders are ignored; all cancelled -> cancelled.
    """
    statuses = list(sub_statuses)
    active = [s for s in statuses if s != OS.CANCELLED.value]
    if not active:
        return OS.CANCELLED.value if statuses else current
    if all(s == OS.DELIVERED.value for s in active):
        return OS.DELIVERED.value
    if any(s in _SHIPPED for s in active):
        return OS.OUT_FOR_DELIVERY.value
    if all(s in _READY_OR_BEYOND for s in active):
        return OS.READY.value
    return current


# =========================
# Internal helpers
# =========================
def _role_value(actor: Actor) -> str:
    role = as_role(actor.role)
    return role.value if role else str(actor.role)


def _load_order(db: Session, order_id: int) -> Order:
    order = (db.query(Order).options(
        selectinload(Order.items),
        selectinload(Order.sub_orders),
    ).filter(Order.id == order_id).first())
    if not order:
        raise NotFound(f"Order {order_id} not found.")
    return order


def _append_history(db: Session,
                    order_id: int,
                    status: str,
                    actor: Actor,
                    notes: Optional[str] = None,
                    sub_order_id: Optional[int] = None) -> None:
    db.add(
        OrderStatusHistory(
            order_id=order_id,
            sub_order_id=sub_order_id,
            status=status,
            actor_id=actor.id,
            actor_role=_role_value(actor),
            actor_name=actor.name or f"user {actor.id}",
            notes=notes,
            created_at=now_utc(),
        ))


def _compare_and_set(db: Session, model, row_id: int, column: str,
                     expected: str, **values: Any) -> bool:
    stmt = (update(model).where(
        model.id == row_id,
        getattr(model, column) == expected,
    ).values(**values).execution_options(synchronize_session=False))
    return db.execute(stmt).rowcount == 1


def _ensure_customer_owner(order: Order, actor: Actor) -> None:
    if order.customer_id != actor.id:
        raise NotFound(f"Order {order.id} not found.")


def _item_payload(item: OrderItem) -> Dict[str, Any]:
    return {
        "order_item_id": item.id,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "quantity": item.quantity,
        "unit_price": item.unit_price,
        "total_price": item.total_price,
    }


def _notify_fulfillers(order: Order, notifier: Notifier, event: str) -> None:
    """Each fulfiller only sees its own sub-order and items."""
    for sub in order.sub_orders:
        if sub.status == OS.CANCELLED.value:
            continue
        own_items = [i for i in order.items if i.sub_order_id == sub.id]
        notifier.publish(
            fulfiller_room(sub.fulfiller_id), event, {
                "order_id": order.id,
                "order_number": order.order_number,
                "sub_order_id": sub.id,
                "status": sub.status,
                "payment_status": order.payment_status,
                "subtotal": sub.subtotal,
                "items": [_item_payload(i) for i in own_items],
                "delivery_address": order.delivery_address,
            })


def _settle_payment(db: Session, order: Order, actor: Actor) -> Decimal:
    """
    Payment side effects: best-effort stock decrement per item, earned credits.
    Items of cancelled sub-orders are left out. Returns credits earned.
    """
    live = {s.id for s in order.sub_orders if s.status != OS.CANCELLED.value}
    for item in order.items:
        if item.sub_order_id not in live:
            continue
        inventory.try_decrement(db, item.fulfiller_id, item.product_id,
                                item.quantity)

    earned = credits_for(order.total_amount)
    if earned > 0:
        credit_ledger.earn(db,
                           order.customer_id,
                           earned,
                           f"Earned from order {order.order_number}",
                           order_id=order.id,
                           actor_id=actor.id)
    return earned


def _reprice_after_sub_cancel(db: Session, order: Order, actor: Actor) -> None:
    """
    One sub-order cancelled while others stay live.
    Subtotal / tax / total are recomputed over the live sub-orders; the
    delivery fee stays as charged. Unpaid: redeemed credits above the new
    total go back. Paid: the cancelled share goes back as credits, less the
    credits earned on it.
    """
    live = db.execute(
        select(SubOrder.subtotal).where(
            SubOrder.order_id == order.id,
            SubOrder.status != OS.CANCELLED.value)).scalars().all()
    subtotal = _round_money(sum((D(x) for x in live), Decimal("0")))
    tax_amount = tax_for(subtotal)
    old_total = D(order.total_amount)
    new_total = subtotal + D(order.delivery_fee) + tax_amount
    credits_used = min(D(order.credits_used), new_total)

    if order.payment_status in _PAID_STATES:
        give_back = _round_money((old_total - new_total) -
                                 (credits_for(old_total) - credits_for(new_total)))
        if give_back > 0:
            credit_ledger.refund(db,
                                 order.customer_id,
                                 give_back,
                                 f"Refund for cancelled items of order "
                                 f"{order.order_number}",
                                 order_id=order.id,
                                 actor_id=actor.id)
            order.refunded_amount = D(order.refunded_amount) + give_back
            order.payment_status = PaymentStatus.PARTIALLY_REFUNDED.value
    else:
        excess = D(order.credits_used) - credits_used
        if excess > 0:
            credit_ledger.refund(db,
                                 order.customer_id,
                                 excess,
                                 f"Credits returned for cancelled items of order "
                                 f"{order.order_number}",
                                 order_id=order.id,
                                 actor_id=actor.id)

    order.subtotal = subtotal
    order.tax_amount = tax_amount
    order.total_amount = new_total
    order.credits_used = credits_used
    order.final_amount = max(Decimal("0"), new_total - credits_used)
    order.updated_at = now_utc()


def _refund_cancelled_order(db: Session, order: Order, actor: Actor) -> None:
    """
    Whole order cancelled. Unpaid: redeemed credits go back.
    Paid: the total goes back as credits, less the credits earned on it.
    """
    if order.payment_status in _PAID_STATES:
        give_back = D(order.total_amount) - credits_for(order.total_amount)
        if give_back > 0:
            credit_ledger.refund(db,
                                 order.customer_id,
                                 give_back,
                                 f"Refund for cancelled order {order.order_number}",
                                 order_id=order.id,
                                 actor_id=actor.id)
            order.refunded_amount = D(order.refunded_amount) + give_back
        order.payment_status = PaymentStatus.REFUNDED.value
    elif D(order.credits_used) > 0:
        credit_ledger.refund(db,
                             order.customer_id,
                             order.credits_used,
                             f"Credits returned for cancelled order "
                             f"{order.order_number}",
                             order_id=order.id,
                             actor_id=actor.id)


# =========================
# Create
# =========================
def _resolve_lines(db: Session,
                   payload: OrderCreateIn) -> "OrderedDict[int, List[Tuple]]":
    """
    Live price / availability per line, grouped by fulfiller (input order kept).
    Same (fulfiller, product) twice is merged into one line.
    """
    merged: "OrderedDict[Tuple[int, int], int]" = OrderedDict()
    for line in payload.items:
        key = (line.fulfiller_id, line.product_id)
        merged[key] = merged.get(key, 0) + line.quantity

    groups: "OrderedDict[int, List[Tuple]]" = OrderedDict()
    for (fulfiller_id, product_id), qty in merged.items():
        q = inventory.quote(db, fulfiller_id, product_id, qty)
        groups.setdefault(fulfiller_id, []).append((q, qty))
    return groups


def _convert_prescription(db: Session, prescription_id: int, actor: Actor,
                          order_id: int) -> None:
    rx = db.get(Prescription, prescription_id)
    if rx is None or rx.customer_id != actor.id:
        raise NotFound(f"Prescription {prescription_id} not found.")
    if rx.current_status != PrescriptionStatus.APPROVED.value:
        raise InvalidTransition(
            "Only an approved prescription can be turned into an order.",
            details={"status": rx.current_status},
        )
    res = db.execute(
        update(Prescription).where(
            Prescription.id == prescription_id,
            Prescription.current_status == PrescriptionStatus.APPROVED.value,
            Prescription.is_converted.is_(False),
        ).values(is_converted=True,
                 order_id=order_id,
                 updated_at=now_utc()).execution_options(
                     synchronize_session=False))
    if res.rowcount != 1:
        raise InvalidTransition(
            f"Prescription {rx.prescription_number} was already used for an order."
        )


def create_order(db: Session,
                 actor: Actor,
                 payload: OrderCreateIn,
                 notifier: Optional[Notifier] = None) -> Order:
    require_capability(actor, Capability.ORDER_CREATE)
    credits_requested = _round_money(D(payload.credits_to_use))

    with unit_of_work(db):
        groups = _resolve_lines(db, payload)

        if credits_requested > 0:
            balance = credit_ledger.get_balance(db, actor.id)
            if credits_requested > balance:
                raise InsufficientCredits(
                    f"Insufficient credits. Available {balance}, requested "
                    f"{credits_requested}.",
                    details={
                        "available": balance,
                        "requested": credits_requested
                    },
                )

        now = now_utc()
        order = Order(
            order_number=next_order_number(db, now),
            customer_id=actor.id,
            prescription_id=payload.prescription_id,
            status=OS.PENDING.value,
            payment_method=payload.payment_method,
            payment_status=PaymentStatus.PENDING.value,
            delivery_address=payload.delivery_address.model_dump(),
            notes=payload.notes,
            created_at=now,
            updated_at=now,
        )

        subtotal = Decimal("0")
        rx_required = False
        for fulfiller_id, lines in groups.items():
            sub = SubOrder(fulfiller_id=fulfiller_id,
                           status=OS.PENDING.value,
                           created_at=now,
                           updated_at=now)
            sub_total = Decimal("0")
            for q, qty in lines:
                line_total = _round_money(q.unit_price * qty)
                item = OrderItem(
                    product_id=q.product_id,
                    fulfiller_id=fulfiller_id,
                    product_name=q.product_name,
                    quantity=qty,
                    unit_price=q.unit_price,
                    total_price=line_total,
                    prescription_required=q.requires_prescription,
                    return_status=ItemReturnStatus.NOT_RETURNED.value,
                    returned_quantity=0,
                )
                sub.items.append(item)
                order.items.append(item)
                sub_total += line_total
                rx_required = rx_required or q.requires_prescription
            sub.subtotal = sub_total
            order.sub_orders.append(sub)
            subtotal += sub_total

        amounts = price_order(subtotal)
        credits_used = min(credits_requested, amounts["total_amount"])
        final_amount = max(Decimal("0"),
                           amounts["total_amount"] - credits_used)

        order.subtotal = amounts["subtotal"]
        order.delivery_fee = amounts["delivery_fee"]
        order.tax_amount = amounts["tax_amount"]
        order.total_amount = amounts["total_amount"]
        order.credits_used = credits_used
        order.final_amount = final_amount
        order.prescription_required = rx_required

        db.add(order)
        db.flush()

        _append_history(db, order.id, OS.PENDING.value, actor, "Order placed")
        for sub in order.sub_orders:
            _append_history(db, order.id, OS.PENDING.value, actor,
                            "Order placed", sub.id)

        if payload.prescription_id:
            _convert_prescription(db, payload.prescription_id, actor,
                                  order.id)

        if credits_used > 0:
            credit_ledger.use(db,
                              actor.id,
                              credits_used,
                              f"Used for order {order.order_number}",
                              order_id=order.id,
                              actor_id=actor.id)

        paid_now = final_amount == 0
        if paid_now:
            order.payment_status = PaymentStatus.PAID.value
            order.paid_at = now
            db.flush()
            _settle_payment(db, order, actor)

    db.refresh(order)
    logger.info("Order %s created by customer %s (%d sub-orders)",
                order.order_number, actor.id, len(order.sub_orders))

    n = notifier or get_notifier()
    n.publish(ADMIN, "new_order", {
        "order_id": order.id,
        "order_number": order.order_number,
        "total_amount": order.total_amount,
    })
    if order.payment_status == PaymentStatus.PAID.value:
        _notify_fulfillers(order, n, "new_order")
    return order


# =========================
# Payment
# =========================
def confirm_payment(db: Session,
                    order_id: int,
                    actor: Actor,
                    notifier: Optional[Notifier] = None
                    ) -> Tuple[Order, Decimal]:
    with unit_of_work(db):
        order = _load_order(db, order_id)
        if not actor.is_admin:
            _ensure_customer_owner(order, actor)
        if order.payment_status == PaymentStatus.PAID.value:
            raise AlreadyPaid(f"Order {order.order_number} is already paid.")
        if order.status in TERMINAL_ORDER:
            raise InvalidTransition(
                f"Order {order.order_number} is {order.status}.",
                details={"status": order.status},
            )

        now = now_utc()
        res = db.execute(
            update(Order).where(
                Order.id == order.id,
                Order.payment_status != PaymentStatus.PAID.value,
                Order.status.notin_(list(TERMINAL_ORDER)),
            ).values(payment_status=PaymentStatus.PAID.value,
                     paid_at=now,
                     updated_at=now).execution_options(
                         synchronize_session=False))
        if res.rowcount != 1:
            raise AlreadyPaid(f"Order {order.order_number} is already paid.")

        earned = _settle_payment(db, order, actor)

    db.refresh(order)
    logger.info("Payment confirmed for order %s, %s credits earned",
                order.order_number, earned)
    _notify_fulfillers(order, notifier or get_notifier(), "new_order")
    return order, earned


# =========================
# Fulfilment
# =========================
def advance_sub_order_status(db: Session,
                             order_id: int,
                             fulfiller_id: int,
                             new_status: str,
                             actor: Actor,
                             notes: Optional[str] = None,
                             estimated_delivery: Optional[str] = None,
                             notifier: Optional[Notifier] = None) -> Order:
    require_capability(actor, Capability.ORDER_FULFIL)
    if not actor.is_admin and actor.id != fulfiller_id:
        raise Unauthorized("You can only update your own sub-orders.")
    if new_status == OS.REFUNDED.value:
        raise InvalidTransition("Refunds go through the return process.")

    with unit_of_work(db):
        sub = (db.query(SubOrder).filter(
            SubOrder.order_id == order_id,
            SubOrder.fulfiller_id == fulfiller_id).first())
        if not sub:
            raise NotFound(
                f"No sub-order for fulfiller {fulfiller_id} in order {order_id}."
            )
        current = sub.status
        ensure_transition(EntityKind.ORDER, current, new_status, actor.role)

        values: Dict[str, Any] = {"status": new_status, "updated_at": now_utc()}
        if estimated_delivery:
            values["estimated_delivery"] = estimated_delivery
        if not _compare_and_set(db, SubOrder, sub.id, "status", current,
                                **values):
            raise InvalidTransition(
                "Sub-order status changed concurrently; reload and retry.")
        _append_history(db, order_id, new_status, actor, notes, sub.id)

        parent_status = db.execute(
            select(Order.status).where(Order.id == order_id)).scalar_one()
        sub_statuses = db.execute(
            select(SubOrder.status).where(
                SubOrder.order_id == order_id)).scalars().all()
        new_parent = aggregate_status(parent_status, sub_statuses)

        if new_parent != parent_status:
            now = now_utc()
            parent_values: Dict[str, Any] = {
                "status": new_parent,
                "updated_at": now
            }
            if new_parent == OS.DELIVERED.value:
                parent_values["delivered_at"] = now
            elif new_parent == OS.CANCELLED.value:
                parent_values.update(cancel_reason=notes,
                                     cancelled_at=now,
                                     cancelled_by_id=actor.id)
            if not _compare_and_set(db, Order, order_id, "status",
                                    parent_status, **parent_values):
                raise InvalidTransition(
                    "Order status changed concurrently; reload and retry.")
            _append_history(db, order_id, new_parent, actor,
                            f"Updated from sub-order {sub.id}")

        if new_status == OS.CANCELLED.value:
            order = db.get(Order, order_id)
            if new_parent == OS.CANCELLED.value:
                _refund_cancelled_order(db, order, actor)
            else:
                _reprice_after_sub_cancel(db, order, actor)

    order = _load_order(db, order_id)
    (notifier or get_notifier()).publish(
        customer_room(order.customer_id), "order_status_changed", {
            "order_id": order.id,
            "order_number": order.order_number,
            "sub_order_id": sub.id,
            "fulfiller_id": fulfiller_id,
            "sub_order_status": new_status,
            "order_status": order.status,
        })
    return order


def cancel_order(db: Session,
                 order_id: int,
                 actor: Actor,
                 reason: Optional[str] = None,
                 notifier: Optional[Notifier] = None) -> Order:
    """
    Whole-order cancel. Open sub-orders are cancelled with it; redeemed
    credits (or, once paid, the total less earned credits) go back.
    """
    with unit_of_work(db):
        order = _load_order(db, order_id)
        role = as_role(actor.role)
        if role == Role.CUSTOMER:
            _ensure_customer_owner(order, actor)
        elif actor.is_fulfiller:
            if any(s.fulfiller_id != actor.id for s in order.sub_orders):
                raise Unauthorized(
                    "Order includes items from other fulfillers; cancel your sub-order instead."
                )
        elif not actor.is_admin:
            raise Unauthorized("You cannot cancel this order.")

        current = order.status
        ensure_transition(EntityKind.ORDER, current, OS.CANCELLED.value,
                          actor.role)

        open_subs = [s for s in order.sub_orders if s.status not in TERMINAL_ORDER]
        # every open sub-order must be cancellable by this role too
        for sub in open_subs:
            ensure_transition(EntityKind.ORDER, sub.status,
                              OS.CANCELLED.value, actor.role)

        now = now_utc()
        if not _compare_and_set(db,
                                Order,
                                order.id,
                                "status",
                                current,
                                status=OS.CANCELLED.value,
                                cancel_reason=reason,
                                cancelled_at=now,
                                cancelled_by_id=actor.id,
                                updated_at=now):
            raise InvalidTransition(
                "Order status changed concurrently; reload and retry.")
        _append_history(db, order.id, OS.CANCELLED.value, actor, reason
                        or "Order cancelled")

        for sub in open_subs:
            if not _compare_and_set(db,
                                    SubOrder,
                                    sub.id,
                                    "status",
                                    sub.status,
                                    status=OS.CANCELLED.value,
                                    updated_at=now):
                raise InvalidTransition(
                    "Sub-order status changed concurrently; reload and retry.")
            _append_history(db, order.id, OS.CANCELLED.value, actor, reason
                            or "Order cancelled", sub.id)

        _refund_cancelled_order(db, order, actor)

    db.refresh(order)
    logger.info("Order %s cancelled by %s (%s)", order.order_number, actor.id,
                _role_value(actor))

    n = notifier or get_notifier()
    if order.customer_id != actor.id:
        n.publish(customer_room(order.customer_id), "order_cancelled", {
            "order_id": order.id,
            "order_number": order.order_number,
            "reason": reason,
        })
    for sub in order.sub_orders:
        if sub.fulfiller_id != actor.id:
            n.publish(fulfiller_room(sub.fulfiller_id), "order_cancelled", {
                "order_id": order.id,
                "order_number": order.order_number,
                "sub_order_id": sub.id,
                "reason": reason,
            })
    return order


# =========================
# Returns
# =========================
def request_return(db: Session,
                   order_id: int,
                   actor: Actor,
                   payload: ReturnRequestIn,
                   notifier: Optional[Notifier] = None) -> ReturnRequest:
    require_capability(actor, Capability.RETURN_REQUEST)

    with unit_of_work(db):
        order = _load_order(db, order_id)
        _ensure_customer_owner(order, actor)

        if order.status != OS.DELIVERED.value or order.delivered_at is None:
            raise InvalidTransition(
                "Only delivered orders can be returned.",
                details={"status": order.status},
            )

        now = now_utc()
        window = timedelta(days=settings.RETURN_WINDOW_DAYS)
        if now - order.delivered_at > window:
            raise ReturnWindowExpired(
                f"Return period of {settings.RETURN_WINDOW_DAYS} days has expired.",
                details={"delivered_at": order.delivered_at},
            )

        by_id = {i.id: i for i in order.items}
        sub_status = {s.id: s.status for s in order.sub_orders}
        seen = set()
        refund = Decimal("0")
        for line in payload.items:
            if line.order_item_id in seen:
                raise InvalidRequest(
                    f"Item {line.order_item_id} listed twice.")
            seen.add(line.order_item_id)

            item = by_id.get(line.order_item_id)
            if item is None:
                raise NotFound(
                    f"Item {line.order_item_id} is not part of this order.")
            if sub_status.get(item.sub_order_id) != OS.DELIVERED.value:
                raise InvalidTransition(
                    f"{item.product_name} was never delivered.",
                    details={
                        "order_item_id": item.id,
                        "sub_order_status": sub_status.get(item.sub_order_id),
                    },
                )
            if item.return_status != ItemReturnStatus.NOT_RETURNED.value:
                raise DuplicateReturnRequest(
                    f"{item.product_name} is already {item.return_status}.",
                    details={"order_item_id": item.id},
                )
            remaining = item.quantity - int(item.returned_quantity or 0)
            if line.quantity > remaining:
                raise InvalidRequest(
                    f"Return quantity for {item.product_name} exceeds the "
                    f"quantity still held ({remaining}).")
            refund += D(item.unit_price) * line.quantity

        rr = ReturnRequest(
            order_id=order.id,
            status=ReturnStatus.REQUESTED.value,
            refund_amount=_round_money(refund),
            reason=payload.reason,
            requested_at=now,
        )
        for line in payload.items:
            res = db.execute(
                update(OrderItem).where(
                    OrderItem.id == line.order_item_id,
                    OrderItem.return_status ==
                    ItemReturnStatus.NOT_RETURNED.value,
                ).values(return_status=ItemReturnStatus.RETURN_REQUESTED.value,
                         return_requested_at=now,
                         return_reason=line.reason
                         or payload.reason).execution_options(
                             synchronize_session=False))
            if res.rowcount != 1:
                raise DuplicateReturnRequest(
                    f"Item {line.order_item_id} is already under a return request."
                )
            rr.items.append(
                ReturnRequestItem(order_item_id=line.order_item_id,
                                  quantity=line.quantity,
                                  reason=line.reason))
        db.add(rr)
        db.flush()

    db.refresh(rr)
    logger.info("Return request %s for order %s (refund %s)", rr.id,
                order_id, rr.refund_amount)
    (notifier or get_notifier()).publish(
        ADMIN, "return_requested", {
            "return_request_id": rr.id,
            "order_id": order_id,
            "refund_amount": rr.refund_amount,
        })
    return rr


def process_return(db: Session,
                   return_request_id: int,
                   decision: str,
                   actor: Actor,
                   notes: Optional[str] = None,
                   notifier: Optional[Notifier] = None) -> ReturnRequest:
    require_capability(actor, Capability.RETURN_PROCESS)
    if decision not in (ReturnStatus.APPROVED.value,
                        ReturnStatus.REJECTED.value):
        raise InvalidRequest("Decision must be approved or rejected.")

    with unit_of_work(db):
        rr = (db.query(ReturnRequest).options(
            selectinload(ReturnRequest.items)).filter(
                ReturnRequest.id == return_request_id).first())
        if not rr:
            raise NotFound(f"Return request {return_request_id} not found.")
        if rr.status != ReturnStatus.REQUESTED.value:
            raise InvalidTransition(
                f"Return request is already {rr.status}.",
                details={"status": rr.status},
            )

        now = now_utc()
        if not _compare_and_set(db,
                                ReturnRequest,
                                rr.id,
                                "status",
                                ReturnStatus.REQUESTED.value,
                                status=decision,
                                processed_at=now,
                                processed_by_id=actor.id,
                                admin_notes=notes):
            raise InvalidTransition(
                "Return request was processed concurrently.")

        order = _load_order(db, rr.order_id)
        by_id = {i.id: i for i in order.items}
        requested = {ri.order_item_id: ri.quantity for ri in rr.items}

        if decision == ReturnStatus.APPROVED.value:
            refund_amount = D(rr.refund_amount)
            if refund_amount > 0:
                credit_ledger.refund(db,
                                     order.customer_id,
                                     refund_amount,
                                     f"Refund for returned items from order "
                                     f"{order.order_number}",
                                     order_id=order.id,
                                     actor_id=actor.id)

            # a line is returned once every unit is back; until then the
            # remaining units can still be requested
            for item_id, qty in requested.items():
                item = by_id[item_id]
                item.returned_quantity = int(item.returned_quantity or 0) + qty
                item.return_status = (ItemReturnStatus.RETURNED.value
                                      if item.returned_quantity >= item.quantity
                                      else ItemReturnStatus.NOT_RETURNED.value)

            order.refunded_amount = D(order.refunded_amount) + refund_amount
            delivered_subs = {s.id for s in order.sub_orders
                              if s.status == OS.DELIVERED.value}
            all_returned = all(
                i.return_status == ItemReturnStatus.RETURNED.value
                for i in order.items if i.sub_order_id in delivered_subs)
            order.payment_status = (PaymentStatus.REFUNDED.value
                                    if all_returned else
                                    PaymentStatus.PARTIALLY_REFUNDED.value)
            order.updated_at = now

            if all_returned and order.status == OS.DELIVERED.value:
                ensure_transition(EntityKind.ORDER, order.status,
                                  OS.REFUNDED.value, actor.role)
                order.status = OS.REFUNDED.value
                _append_history(db, order.id, OS.REFUNDED.value, actor, notes
                                or "All items returned")
        else:
            for item_id in requested:
                item = by_id[item_id]
                item.return_status = ItemReturnStatus.NOT_RETURNED.value
                item.return_requested_at = None
                item.return_reason = None

    db.refresh(rr)
    logger.info("Return request %s %s by %s", rr.id, decision, actor.id)
    (notifier or get_notifier()).publish(
        customer_room(order.customer_id), "return_processed", {
            "return_request_id": rr.id,
            "order_id": rr.order_id,
            "status": rr.status,
            "refund_amount": rr.refund_amount,
        })
    return rr


# =========================
# Reads
# =========================
def list_customer_orders(db: Session,
                         actor: Actor,
                         status: Optional[str] = None) -> List[Order]:
    q = db.query(Order).options(selectinload(Order.items),
                                selectinload(Order.sub_orders)).filter(
                                    Order.customer_id == actor.id)
    if status:
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_all_orders(db: Session,
                    actor: Actor,
                    status: Optional[str] = None,
                    payment_status: Optional[str] = None) -> List[Order]:
    """Admin view of every order, newest first."""
    require_capability(actor, Capability.ORDER_VIEW_ALL)
    q = db.query(Order).options(selectinload(Order.items),
                                selectinload(Order.sub_orders))
    if status:
        q = q.filter(Order.status == status)
    if payment_status:
        q = q.filter(Order.payment_status == payment_status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_order_for_actor(db: Session, order_id: int, actor: Actor) -> Order:
    order = _load_order(db, order_id)
    if actor.is_admin:
        return order
    if actor.is_fulfiller:
        if any(s.fulfiller_id == actor.id for s in order.sub_orders):
            return order
        raise NotFound(f"Order {order_id} not found.")
    _ensure_customer_owner(order, actor)
    return order


def list_fulfiller_orders(db: Session,
                          actor: Actor,
                          status: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Paid orders with a sub-order for this fulfiller.
    Only the fulfiller's own sub-order and items are returned.
    """
    require_capability(actor, Capability.ORDER_FULFIL)
    q = (db.query(SubOrder).join(Order, Order.id == SubOrder.order_id).options(
        selectinload(SubOrder.items),
        selectinload(SubOrder.order),
        selectinload(SubOrder.status_history),
    ).filter(
        SubOrder.fulfiller_id == actor.id,
        Order.payment_status.in_([
            PaymentStatus.PAID.value,
            PaymentStatus.PARTIALLY_REFUNDED.value,
            PaymentStatus.REFUNDED.value,
        ]),
    ))
    if status:
        q = q.filter(SubOrder.status == status)

    out: List[Dict[str, Any]] = []
    for sub in q.order_by(SubOrder.created_at.desc(), SubOrder.id.desc()).all():
        order = sub.order
        out.append({
            "order_id": order.id,
            "order_number": order.order_number,
            "customer_id": order.customer_id,
            "payment_status": order.payment_status,
            "order_status": order.status,
            "delivery_address": order.delivery_address,
            "sub_order": sub,
            "items": list(sub.items),
            "created_at": order.created_at,
        })
    return out


def list_return_requests(db: Session,
                         actor: Actor,
                         status: Optional[str] = None) -> List[ReturnRequest]:
    require_capability(actor, Capability.RETURN_PROCESS)
    q = db.query(ReturnRequest).options(selectinload(ReturnRequest.items))
    if status:
        q = q.filter(ReturnRequest.status == status)
    return q.order_by(ReturnRequest.requested_at.desc(),
                      ReturnRequest.id.desc()).all()
