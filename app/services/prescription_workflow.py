# FILE: app/services/prescription_workflow.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.core.errors import (
    AlreadyClaimed,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    Unauthorized,
)
from app.core.rbac import (
    Actor,
    Capability,
    Role,
    as_role,
    has_capability,
    require_capability,
)
from app.db.session import unit_of_work
from app.models.prescription import (
    Prescription,
    PrescriptionImage,
    PrescriptionStatus,
    PrescriptionStatusHistory,
    ProcessedMedicine,
    Urgency,
)
from app.schemas.prescription import (
    AnnotateIn,
    PrescriptionImageIn,
    PrescriptionSubmitIn,
)
from app.services import inventory
from app.services.notifier import (
    PRESCRIPTION_READERS,
    Notifier,
    customer_room,
    get_notifier,
)
from app.services.number_series import next_prescription_number
from app.services.transitions import EntityKind, ensure_transition
from app.utils.timezone import now_utc

logger = logging.getLogger(__name__)

PS = PrescriptionStatus

URGENCY_MULTIPLIER: Dict[str, float] = {
    Urgency.ROUTINE.value: 1.5,
    Urgency.NORMAL.value: 1.0,
    Urgency.URGENT.value: 0.5,
}

# urgent first, then normal, then routine
_URGENCY_RANK = {
    Urgency.URGENT.value: 0,
    Urgency.NORMAL.value: 1,
    Urgency.ROUTINE.value: 2,
}

_PROGRESS = {
    PS.SUBMITTED.value: 0,
    PS.REVIEWING.value: 50,
    PS.APPROVED.value: 100,
}


# =========================
# Helpers
# =========================
def base_hours(status: str) -> float:
    if status == PS.REVIEWING.value:
        return float(settings.REVIEW_BASE_HOURS)
    if status == PS.SUSPENDED.value:
        return float(settings.SUSPENDED_BASE_HOURS)
    return 0.0


def estimate_completion(status: str,
                        urgency: str,
                        *,
                        start: Optional[datetime] = None) -> datetime:
    """start + base(status) x urgency multiplier"""
    start = start or now_utc()
    mult = URGENCY_MULTIPLIER.get(urgency, 1.0)
    return start + timedelta(hours=base_hours(status) * mult)


def workflow_progress(rx: Prescription) -> int:
    return _PROGRESS.get(rx.current_status, 0)


def _role_value(actor: Actor) -> str:
    role = as_role(actor.role)
    return role.value if role else str(actor.role)


def _load(db: Session, prescription_id: int) -> Prescription:
    rx = (db.query(Prescription).options(
        selectinload(Prescription.images),
        selectinload(Prescription.processed_medicines),
    ).filter(Prescription.id == prescription_id).first())
    if not rx:
        raise NotFound(f"Prescription {prescription_id} not found.")
    return rx


def _append_history(db: Session,
                    rx_id: int,
                    status: str,
                    actor: Actor,
                    notes: Optional[str] = None,
                    estimated_completion: Optional[datetime] = None) -> None:
    db.add(
        PrescriptionStatusHistory(
            prescription_id=rx_id,
            status=status,
            actor_id=actor.id,
            actor_role=_role_value(actor),
            actor_name=actor.name or f"user {actor.id}",
            notes=notes,
            estimated_completion=estimated_completion,
            created_at=now_utc(),
        ))


def _compare_and_set(db: Session, rx_id: int, expected: str,
                     **values: Any) -> bool:
    """
    UPDATE ... WHERE current_status = :expected.
    False means another request moved the prescription first.
    """
    extra = values.pop("where", ())
    stmt = (update(Prescription).where(
        Prescription.id == rx_id,
        Prescription.current_status == expected,
        *extra,
    ).values(updated_at=now_utc(), **values).execution_options(
        synchronize_session=False))
    return db.execute(stmt).rowcount == 1


def _ensure_owner(rx: Prescription, actor: Actor) -> None:
    if rx.customer_id != actor.id:
        # do not leak other customers' prescriptions
        raise NotFound(f"Prescription {rx.id} not found.")


def _ensure_submitted(rx: Prescription, action: str) -> None:
    if rx.current_status != PS.SUBMITTED.value:
        raise InvalidTransition(
            f"Cannot {action} once the prescription is {rx.current_status}.",
            details={"status": rx.current_status},
        )


def _image_rows(images: List[PrescriptionImageIn]) -> List[PrescriptionImage]:
    return [
        PrescriptionImage(url=img.url,
                          storage_key=img.storage_key,
                          original_name=img.original_name,
                          uploaded_at=now_utc()) for img in images
    ]


def _summary(rx: Prescription) -> Dict[str, Any]:
    return {
        "prescription_id": rx.id,
        "prescription_number": rx.prescription_number,
        "status": rx.current_status,
        "urgency": rx.urgency,
        "estimated_completion": rx.estimated_completion,
    }


# =========================
# Submit / images
# =========================
def submit_prescription(db: Session,
                        actor: Actor,
                        payload: PrescriptionSubmitIn,
                        notifier: Optional[Notifier] = None) -> Prescription:
    require_capability(actor, Capability.PRESCRIPTION_SUBMIT)

    if not payload.images:
        raise InvalidRequest("At least one prescription image is required.")
    if len(payload.images) > settings.MAX_PRESCRIPTION_IMAGES:
        raise InvalidRequest(
            f"Maximum {settings.MAX_PRESCRIPTION_IMAGES} images allowed.")

    with unit_of_work(db):
        now = now_utc()
        rx = Prescription(
            prescription_number=next_prescription_number(db),
            customer_id=actor.id,
            urgency=payload.urgency,
            current_status=PS.SUBMITTED.value,
            patient_name=payload.patient_name,
            patient_age=payload.patient_age,
            patient_gender=payload.patient_gender,
            doctor_name=payload.doctor_name,
            doctor_specialty=payload.doctor_specialty,
            hospital_clinic=payload.hospital_clinic,
            diagnosis=payload.diagnosis,
            special_instructions=payload.special_instructions,
            estimated_completion=estimate_completion(PS.SUBMITTED.value,
                                                     payload.urgency,
                                                     start=now),
            is_converted=False,
            created_at=now,
            updated_at=now,
        )
        rx.images = _image_rows(payload.images)
        db.add(rx)
        db.flush()
        _append_history(db, rx.id, PS.SUBMITTED.value, actor,
                        "Prescription submitted")

    db.refresh(rx)
    logger.info("Prescription %s submitted by customer %s",
                rx.prescription_number, actor.id)
    (notifier or get_notifier()).publish(PRESCRIPTION_READERS,
                                         "new_prescription", _summary(rx))
    return rx


def add_images(db: Session, prescription_id: int, actor: Actor,
               images: List[PrescriptionImageIn]) -> Prescription:
    if not images:
        raise InvalidRequest("No images provided.")

    with unit_of_work(db):
        rx = _load(db, prescription_id)
        _ensure_owner(rx, actor)
        _ensure_submitted(rx, "add images")

        total = len(rx.images) + len(images)
        if total > settings.MAX_PRESCRIPTION_IMAGES:
            raise InvalidRequest(
                f"Maximum {settings.MAX_PRESCRIPTION_IMAGES} images allowed.",
                details={"current": len(rx.images), "adding": len(images)},
            )
        rx.images.extend(_image_rows(images))
        rx.updated_at = now_utc()

    db.refresh(rx)
    return rx


def remove_image(db: Session, prescription_id: int, image_id: int,
                 actor: Actor) -> Prescription:
    with unit_of_work(db):
        rx = _load(db, prescription_id)
        _ensure_owner(rx, actor)
        _ensure_submitted(rx, "remove images")

        image = next((i for i in rx.images if i.id == image_id), None)
        if image is None:
            raise NotFound(f"Image {image_id} not found.")
        if len(rx.images) <= 1:
            raise InvalidRequest(
                "Cannot remove the last image. A prescription needs at least one."
            )
        rx.images.remove(image)
        rx.updated_at = now_utc()

    db.refresh(rx)
    return rx


def delete_prescription(db: Session, prescription_id: int,
                        actor: Actor) -> None:
    """Only a still-submitted, never-converted prescription can be removed."""
    with unit_of_work(db):
        rx = _load(db, prescription_id)
        if not actor.is_admin:
            _ensure_owner(rx, actor)
        _ensure_submitted(rx, "delete")
        if rx.is_converted:
            raise InvalidTransition(
                "Prescription is already linked to an order.")
        db.delete(rx)
    logger.info("Prescription %s deleted by %s", prescription_id, actor.id)


# =========================
# Review
# =========================
def claim_prescription(db: Session,
                       prescription_id: int,
                       actor: Actor,
                       notifier: Optional[Notifier] = None) -> Prescription:
    require_capability(actor, Capability.PRESCRIPTION_REVIEW)

    with unit_of_work(db):
        rx = _load(db, prescription_id)
        if rx.current_status != PS.SUBMITTED.value:
            raise AlreadyClaimed(
                f"Prescription {rx.prescription_number} is already "
                f"{rx.current_status}.",
                details={
                    "status": rx.current_status,
                    "assigned_reader_id": rx.assigned_reader_id,
                },
            )
        ensure_transition(EntityKind.PRESCRIPTION, rx.current_status,
                          PS.REVIEWING.value, actor.role)

        now = now_utc()
        eta = estimate_completion(PS.REVIEWING.value, rx.urgency, start=now)
        if not _compare_and_set(db,
                                rx.id,
                                PS.SUBMITTED.value,
                                current_status=PS.REVIEWING.value,
                                assigned_reader_id=actor.id,
                                processing_started_at=now,
                                estimated_completion=eta):
            raise AlreadyClaimed(
                f"Prescription {rx.prescription_number} was claimed by another reviewer."
            )
        _append_history(db, rx.id, PS.REVIEWING.value, actor,
                        "Review started", eta)

    db.refresh(rx)
    logger.info("Prescription %s claimed by %s", rx.prescription_number,
                actor.id)
    (notifier or get_notifier()).publish(customer_room(rx.customer_id),
                                         "prescription_status_changed",
                                         _summary(rx))
    return rx


def _processed_rows(db: Session, payload: AnnotateIn) -> List[ProcessedMedicine]:
    rows: List[ProcessedMedicine] = []
    for m in payload.medicines:
        available = m.is_available
        unit_price = m.unit_price
        if m.product_id and m.pharmacy_id:
            stock = inventory.get_stock(db, m.pharmacy_id, m.product_id)
            available = available and inventory.is_sellable(stock, m.quantity)
            if unit_price is None and stock is not None:
                unit_price = stock.price

        rows.append(
            ProcessedMedicine(
                product_id=m.product_id,
                product_name=m.product_name,
                quantity=m.quantity,
                dosage=m.dosage,
                instructions=m.instructions,
                unit_price=unit_price,
                pharmacy_id=m.pharmacy_id,
                alternatives=[a.model_dump(mode="json") for a in m.alternatives],
                is_available=bool(available),
            ))
    return rows


def annotate_prescription(db: Session,
                          prescription_id: int,
                          actor: Actor,
                          payload: AnnotateIn,
                          notifier: Optional[Notifier] = None) -> Prescription:
    """
    Assigned reader attaches purchasable items and closes the review
    (approved / rejected / suspended). Unavailable items are flagged per item.
    """
    require_capability(actor, Capability.PRESCRIPTION_REVIEW)
    decision = payload.decision

    if decision == PS.REJECTED.value and not (payload.rejection_reason
                                              or payload.notes):
        raise InvalidRequest("Rejection reason is required.")

    with unit_of_work(db):
        rx = _load(db, prescription_id)
        if rx.current_status != PS.REVIEWING.value:
            raise InvalidTransition(
                f"Prescription must be reviewing to annotate (is {rx.current_status}).",
                details={"status": rx.current_status},
            )
        if rx.assigned_reader_id != actor.id:
            raise Unauthorized(
                "Only the assigned reviewer can annotate this prescription.")
        ensure_transition(EntityKind.PRESCRIPTION, rx.current_status,
                          decision, actor.role)

        now = now_utc()
        eta_base = (PS.SUSPENDED.value
                    if decision == PS.SUSPENDED.value else PS.REVIEWING.value)
        eta = estimate_completion(eta_base, rx.urgency, start=now)

        values: Dict[str, Any] = {
            "current_status": decision,
            "reader_notes": payload.notes,
            "estimated_completion": eta,
        }
        if decision == PS.SUSPENDED.value:
            values.update(suspension_category=payload.suspension_category,
                          suspension_reason=payload.suspension_reason
                          or payload.notes,
                          suspended_at=now)
        else:
            values["processing_completed_at"] = now
            if rx.processing_started_at:
                values["review_duration_minutes"] = int(
                    (now - rx.processing_started_at).total_seconds() // 60)
            if decision == PS.REJECTED.value:
                values["rejection_reason"] = (payload.rejection_reason
                                              or payload.notes)

        if not _compare_and_set(
                db,
                rx.id,
                PS.REVIEWING.value,
                where=(Prescription.assigned_reader_id == actor.id, ),
                **values):
            raise InvalidTransition(
                "Prescription changed while annotating; reload and retry.")

        for old in list(rx.processed_medicines):
            db.delete(old)
        db.flush()
        for row in _processed_rows(db, payload):
            row.prescription_id = rx.id
            db.add(row)

        _append_history(db, rx.id, decision, actor, payload.notes
                        or f"Review {decision}", eta)

    db.refresh(rx)
    logger.info("Prescription %s annotated -> %s by %s",
                rx.prescription_number, decision, actor.id)
    data = _summary(rx)
    data["processed_medicines"] = len(rx.processed_medicines)
    (notifier or get_notifier()).publish(customer_room(rx.customer_id),
                                         "prescription_processed", data)
    return rx


def update_status(db: Session,
                  prescription_id: int,
                  actor: Actor,
                  new_status: str,
                  notes: Optional[str] = None,
                  notifier: Optional[Notifier] = None) -> Prescription:
    """
    Generic reviewer / admin move through the transition table
    (e.g. resume a suspended prescription).
    """
    with unit_of_work(db):
        rx = _load(db, prescription_id)
        if as_role(actor.role) == Role.CUSTOMER:
            _ensure_owner(rx, actor)
        current = rx.current_status
        ensure_transition(EntityKind.PRESCRIPTION, current, new_status,
                          actor.role)

        now = now_utc()
        eta = estimate_completion(new_status, rx.urgency, start=now)
        values: Dict[str, Any] = {
            "current_status": new_status,
            "estimated_completion": eta,
        }
        if new_status == PS.REVIEWING.value:
            values["assigned_reader_id"] = actor.id
            values["processing_started_at"] = rx.processing_started_at or now
        elif new_status == PS.SUSPENDED.value:
            values.update(suspension_reason=notes, suspended_at=now)
        elif new_status in (PS.APPROVED.value, PS.REJECTED.value):
            values["processing_completed_at"] = now
            if new_status == PS.REJECTED.value:
                values["rejection_reason"] = notes
        if notes:
            values["reader_notes"] = notes

        if not _compare_and_set(db, rx.id, current, **values):
            raise InvalidTransition(
                "Prescription status changed concurrently; reload and retry.")
        _append_history(db, rx.id, new_status, actor, notes, eta)

    db.refresh(rx)
    (notifier or get_notifier()).publish(customer_room(rx.customer_id),
                                         "prescription_status_changed",
                                         _summary(rx))
    return rx


def cancel_prescription(db: Session,
                        prescription_id: int,
                        actor: Actor,
                        reason: Optional[str] = None,
                        notifier: Optional[Notifier] = None) -> Prescription:
    with unit_of_work(db):
        rx = _load(db, prescription_id)
        if as_role(actor.role) == Role.CUSTOMER:
            _ensure_owner(rx, actor)
        if rx.is_converted:
            raise InvalidTransition(
                "Prescription is already linked to an order.")
        current = rx.current_status
        ensure_transition(EntityKind.PRESCRIPTION, current,
                          PS.CANCELLED.value, actor.role)

        if not _compare_and_set(db,
                                rx.id,
                                current,
                                current_status=PS.CANCELLED.value):
            raise InvalidTransition(
                "Prescription status changed concurrently; reload and retry.")
        _append_history(db, rx.id, PS.CANCELLED.value, actor, reason
                        or "Cancelled")

    db.refresh(rx)
    if actor.is_admin:
        (notifier or get_notifier()).publish(customer_room(rx.customer_id),
                                             "prescription_status_changed",
                                             _summary(rx))
    return rx


# =========================
# Reads
# =========================
def list_queue(db: Session, actor: Actor) -> List[Prescription]:
    """Reviewer work queue: urgent first, then oldest first."""
    require_capability(actor, Capability.PRESCRIPTION_REVIEW)
    rank = case(_URGENCY_RANK, value=Prescription.urgency, else_=1)
    return (db.query(Prescription).options(
        selectinload(Prescription.images)).filter(
            Prescription.current_status.in_(
                [PS.SUBMITTED.value,
                 PS.REVIEWING.value])).order_by(rank.asc(),
                                                Prescription.created_at.asc(),
                                                Prescription.id.asc()).all())


def list_for_customer(db: Session,
                      actor: Actor,
                      status: Optional[str] = None) -> List[Prescription]:
    q = db.query(Prescription).filter(Prescription.customer_id == actor.id)
    if status:
        q = q.filter(Prescription.current_status == status)
    return q.order_by(Prescription.created_at.desc(),
                      Prescription.id.desc()).all()


def list_all(db: Session,
             actor: Actor,
             status: Optional[str] = None,
             urgency: Optional[str] = None) -> List[Prescription]:
    require_capability(actor, Capability.PRESCRIPTION_VIEW_ALL)
    q = db.query(Prescription).options(selectinload(Prescription.images))
    if status:
        q = q.filter(Prescription.current_status == status)
    if urgency:
        q = q.filter(Prescription.urgency == urgency)
    return q.order_by(Prescription.created_at.desc(),
                      Prescription.id.desc()).all()


def get_for_actor(db: Session, prescription_id: int,
                  actor: Actor) -> Prescription:
    rx = _load(db, prescription_id)
    if has_capability(actor, Capability.PRESCRIPTION_VIEW_ALL):
        return rx
    _ensure_owner(rx, actor)
    return rx
