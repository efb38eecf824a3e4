# FILE: app/models/prescription.py
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
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class PrescriptionStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class Urgency(str, enum.Enum):
    ROUTINE = "routine"
    NORMAL = "normal"
    URGENT = "urgent"


class Prescription(Base):
    """
    Customer uploaded prescription.

    Workflow:
      submitted -> reviewing (claimed by a reader) -> approved / rejected / suspended
      approved  -> cancelled
    status_history is append-only; its last row always matches current_status.
    """

    __tablename__ = "prescriptions"
    __table_args__ = (
        Index("ix_prescriptions_status_urgency", "current_status", "urgency"),
        Index("ix_prescriptions_reader_status", "assigned_reader_id",
              "current_status"),
        Index("ix_prescriptions_customer_status", "customer_id",
              "current_status"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    prescription_number = Column(String(32),
                                 unique=True,
                                 index=True,
                                 nullable=False)

    customer_id = Column(Integer,
                         ForeignKey("users.id"),
                         nullable=False,
                         index=True)

    # Patient / doctor metadata (free text)
    patient_name = Column(String(191), nullable=True)
    patient_age = Column(Integer, nullable=True)
    patient_gender = Column(String(16), nullable=True)
    doctor_name = Column(String(191), nullable=True)
    doctor_specialty = Column(String(120), nullable=True)
    hospital_clinic = Column(String(191), nullable=True)
    diagnosis = Column(Text, nullable=True)
    special_instructions = Column(Text, nullable=True)

    urgency = Column(String(16), nullable=False, default=Urgency.NORMAL.value)
    current_status = Column(String(16),
                            nullable=False,
                            default=PrescriptionStatus.SUBMITTED.value)

    assigned_reader_id = Column(Integer,
                                ForeignKey("users.id"),
                                nullable=True)
    reader_notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Suspension
    suspension_category = Column(String(64), nullable=True)
    suspension_reason = Column(Text, nullable=True)
    suspended_at = Column(DateTime, nullable=True)

    # Timing
    estimated_completion = Column(DateTime, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    review_duration_minutes = Column(Integer, nullable=True)

    # Order conversion (one prescription -> at most one order)
    is_converted = Column(Boolean, nullable=False, default=False)
    order_id = Column(Integer, nullable=True, index=True)

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

    # --- Relationships ---
    customer = relationship("User", foreign_keys=[customer_id])
    assigned_reader = relationship("User", foreign_keys=[assigned_reader_id])

    images = relationship(
        "PrescriptionImage",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="PrescriptionImage.id",
    )
    status_history = relationship(
        "PrescriptionStatusHistory",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="PrescriptionStatusHistory.id",
    )
    processed_medicines = relationship(
        "ProcessedMedicine",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="ProcessedMedicine.id",
    )


class PrescriptionImage(Base):
    """
    Opaque storage handle of one uploaded page / photo.
    """

    __tablename__ = "prescription_images"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(
        Integer,
        ForeignKey("prescriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url = Column(String(500), nullable=False)
    storage_key = Column(String(255), nullable=True)
    original_name = Column(String(255), nullable=True)

    uploaded_at = Column(DateTime, nullable=False, server_default=func.now())

    prescription = relationship("Prescription", back_populates="images")


class PrescriptionStatusHistory(Base):
    __tablename__ = "prescription_status_history"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(
        Integer,
        ForeignKey("prescriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(16), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    actor_role = Column(String(32), nullable=False)
    actor_name = Column(String(120), nullable=False)
    notes = Column(Text, nullable=True)
    estimated_completion = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)

    prescription = relationship("Prescription", back_populates="status_history")


class ProcessedMedicine(Base):
    """
    Reviewer authored orderable line: what the customer can actually buy.
    alternatives: [{"product_id": .., "product_name": .., "price": ..}]
    """

    __tablename__ = "prescription_processed_medicines"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(
        Integer,
        ForeignKey("prescriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    dosage = Column(String(120), nullable=True)
    instructions = Column(Text, nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=True, default=Decimal("0"))
    pharmacy_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    alternatives = Column(JSON, nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)

    prescription = relationship("Prescription",
                                back_populates="processed_medicines")
    product = relationship("Product")
