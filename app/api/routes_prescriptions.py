# FILE: app/api/routes_prescriptions.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.deps import current_actor, get_db, notifier_dep
from app.core.errors import WorkflowError
from app.core.rbac import Actor
from app.schemas.prescription import (
    AddImagesIn,
    AnnotateIn,
    CancelIn,
    PrescriptionOut,
    PrescriptionSubmitIn,
    StatusUpdateIn,
)
from app.services import prescription_workflow as wf
from app.services.notifier import Notifier
from app.utils.resp import err, ok, workflow_err

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/prescriptions", tags=["prescriptions"])


def _safe_err(e: Exception):
    if isinstance(e, IntegrityError):
        return err("Database constraint error (duplicate/invalid reference).", status_code=400)
    logger.exception("Unhandled prescription error")
    return err(str(getattr(e, "detail", e)), status_code=getattr(e, "status_code", 500))


def _out(rx) -> dict:
    data = PrescriptionOut.model_validate(rx).model_dump()
    data["workflow_progress"] = wf.workflow_progress(rx)
    return data


# =========================
# CUSTOMER
# =========================
@router.post("")
def submit_prescription_api(
    payload: PrescriptionSubmitIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rx = wf.submit_prescription(db, actor, payload, notifier)
        return ok(_out(rx), status_code=201)
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/mine")
def my_prescriptions(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_for_customer(db, actor, status)
        return ok([_out(x) for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{prescription_id}/images")
def add_images_api(
    prescription_id: int,
    payload: AddImagesIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rx = wf.add_images(db, prescription_id, actor, payload.images)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.delete("/{prescription_id}/images/{image_id}")
def remove_image_api(
    prescription_id: int,
    image_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rx = wf.remove_image(db, prescription_id, image_id, actor)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{prescription_id}/cancel")
def cancel_prescription_api(
    prescription_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rx = wf.cancel_prescription(db, prescription_id, actor, payload.reason,
                                    notifier)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.delete("/{prescription_id}")
def delete_prescription_api(
    prescription_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        wf.delete_prescription(db, prescription_id, actor)
        return ok({"id": prescription_id, "deleted": True})
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


# =========================
# REVIEWER
# =========================
@router.get("/queue")
def review_queue(
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_queue(db, actor)
        return ok([_out(x) for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("")
def all_prescriptions(
    status: Optional[str] = Query(None),
    urgency: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rows = wf.list_all(db, actor, status, urgency)
        return ok([_out(x) for x in rows])
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{prescription_id}/claim")
def claim_prescription_api(
    prescription_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rx = wf.claim_prescription(db, prescription_id, actor, notifier)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/{prescription_id}/annotate")
def annotate_prescription_api(
    prescription_id: int,
    payload: AnnotateIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rx = wf.annotate_prescription(db, prescription_id, actor, payload,
                                      notifier)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


@router.put("/{prescription_id}/status")
def update_status_api(
    prescription_id: int,
    payload: StatusUpdateIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    notifier: Notifier = Depends(notifier_dep),
):
    try:
        rx = wf.update_status(db, prescription_id, actor, payload.status,
                              payload.notes, notifier)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)


# keep last: catches any /{id}
@router.get("/{prescription_id}")
def get_prescription_api(
    prescription_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        rx = wf.get_for_actor(db, prescription_id, actor)
        return ok(_out(rx))
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        return _safe_err(e)
