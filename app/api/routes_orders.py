# FILE: app/api/routes_orders.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.deps import current_actor, get_db, notifier_dep
from app.core.errors import WorkflowError
from app.core.rbac import Actor
from app.schemas.order import (
    FulfillerOrderOut,
    OrderCancelIn,
    OrderCreateIn,
    OrderOut,
    PaymentConfirmedOut,
    ProcessReturnIn,
    ReturnRequestIn,
    ReturnRequestOut,
    SubOrderStatusIn,
)
from app.services import order_workflow as wf
from app.services.notifier import Notifier
from app.utils.resp import err, ok, workflow_err

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


def _safe_err(e: Exception):
    if isinstance(e, IntegrityError):
        return err("Database constraint error (duplicate/invalid reference).", status_code=400)
    logger.exception("Unhandled order error")
    return err(str(getattr(e, "detail", e)), status_code=getattr(e, "status_code", 500))


def _out(order) -> dict:
    return OrderOut.model_validate(order).model_dump()


# =========================
# CUSTOMER
# =========================
@router.post("")
def create_order_api(
    payload: OrderCreateIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        order = wf.create_order(db, actor, payload, notifier)
        return ok(_out(order), status_code=201)
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/mine")
def my_orders(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_customer_orders(db, actor, status)
        return ok([_out(x) for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{order_id}/confirm-payment")
def confirm_payment_api(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        order, earned = wf.confirm_payment(db, order_id, actor, notifier)
        out = PaymentConfirmedOut(order=OrderOut.model_validate(order),
                                  credits_earned=earned)
        return ok(out.model_dump())
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{order_id}/cancel")
def cancel_order_api(
    order_id: int,
    payload: OrderCancelIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        order = wf.cancel_order(db, order_id, actor, payload.reason, notifier)
        return ok(_out(order))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{order_id}/returns")
def request_return_api(
    order_id: int,
    payload: ReturnRequestIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rr = wf.request_return(db, order_id, actor, payload, notifier)
        return ok(ReturnRequestOut.model_validate(rr).model_dump(), status_code=201)
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


# =========================
# FULFILLER
# =========================
@router.get("/fulfiller")
def fulfiller_orders(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_fulfiller_orders(db, actor, status)
        return ok([FulfillerOrderOut.model_validate(x).model_dump() for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.put("/{order_id}/sub-orders/{fulfiller_id}/status")
def advance_sub_order_api(
    order_id: int,
    fulfiller_id: int,
    payload: SubOrderStatusIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        order = wf.advance_sub_order_status(
            db,
            order_id,
            fulfiller_id,
            payload.status,
            actor,
            notes=payload.notes,
            estimated_delivery=payload.estimated_delivery,
            notifier=notifier,
        )
        return ok(_out(order))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


# =========================
# ADMIN
# =========================
@router.get("")
def all_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_all_orders(db, actor, status, payment_status)
        return ok([_out(x) for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/return-requests")
def list_return_requests_api(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_return_requests(db, actor, status)
        return ok([ReturnRequestOut.model_validate(x).model_dump() for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.put("/return-requests/{return_request_id}")
def process_return_api(
    return_request_id: int,
    payload: ProcessReturnIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rr = wf.process_return(db, return_request_id, payload.decision, actor,
                               payload.admin_notes, notifier)
        return ok(ReturnRequestOut.model_validate(rr).model_dump())
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


# keep last: catches any /{id}
@router.get("/{order_id}")
def get_order_api(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        order = wf.get_order_for_actor(db, order_id, actor)
        return ok(_out(order))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)
