# FILE: app/schemas/prescription.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, ConfigDict

from app.schemas.common import StatusHistoryOut

UrgencyIn = Literal["routine", "normal", "urgent"]

# ---------- Images ----------


class PrescriptionImageIn(BaseModel):
    url: str = Field(..., min_length=1)
    storage_key: Optional[str] = None
    original_name: Optional[str] = None


class PrescriptionImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    storage_key: Optional[str] = None
    original_name: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class AddImagesIn(BaseModel):
    images: List[PrescriptionImageIn] = []


# ---------- Submit ----------


class PatientInfo(BaseModel):
    patient_name: Optional[str] = None
    patient_age: Optional[int] = Field(None, ge=0, le=150)
    patient_gender: Optional[Literal["male", "female"]] = None
    doctor_name: Optional[str] = None
    doctor_specialty: Optional[str] = None
    hospital_clinic: Optional[str] = None
    diagnosis: Optional[str] = None
    special_instructions: Optional[str] = None


class PrescriptionSubmitIn(PatientInfo):
    images: List[PrescriptionImageIn] = []
    urgency: UrgencyIn = "normal"


# ---------- Review ----------


class AlternativeIn(BaseModel):
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    price: Optional[Decimal] = None


class ProcessedMedicineIn(BaseModel):
    product_id: Optional[int] = None
    product_name: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    dosage: Optional[str] = None
    instructions: Optional[str] = None
    unit_price: Optional[Decimal] = Field(None, ge=0)
    pharmacy_id: Optional[int] = None
    alternatives: List[AlternativeIn] = []
    is_available: bool = True


class AnnotateIn(BaseModel):
    medicines: List[ProcessedMedicineIn] = []
    notes: Optional[str] = None
    decision: Literal["approved", "rejected", "suspended"] = "approved"
    rejection_reason: Optional[str] = None
    suspension_category: Optional[str] = None
    suspension_reason: Optional[str] = None


class StatusUpdateIn(BaseModel):
    status: Literal["reviewing", "approved", "rejected", "suspended",
                    "cancelled"]
    notes: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


# ---------- Out ----------


class ProcessedMedicineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    dosage: Optional[str] = None
    instructions: Optional[str] = None
    unit_price: Optional[Decimal] = None
    pharmacy_id: Optional[int] = None
    alternatives: Optional[list] = None
    is_available: bool


class PrescriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    prescription_number: str
    customer_id: int

    patient_name: Optional[str] = None
    patient_age: Optional[int] = None
    patient_gender: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_specialty: Optional[str] = None
    hospital_clinic: Optional[str] = None
    diagnosis: Optional[str] = None
    special_instructions: Optional[str] = None

    urgency: str
    current_status: str
    assigned_reader_id: Optional[int] = None
    reader_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    suspension_category: Optional[str] = None
    suspension_reason: Optional[str] = None

    estimated_completion: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    review_duration_minutes: Optional[int] = None

    is_converted: bool
    order_id: Optional[int] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    images: List[PrescriptionImageOut] = []
    processed_medicines: List[ProcessedMedicineOut] = []
    status_history: List[StatusHistoryOut] = []
