"""
Pydantic schemas for caller-facing requests
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from .calculator import PaymentFrequency
from .status import ApplicationStatus
from .applications import RejectionReason


class SimulationRequest(BaseModel):
    product_id: str
    amount: Decimal = Field(..., gt=0, description="Requested principal")
    term_months: int = Field(..., gt=0)
    payment_frequency: str = Field("MONTHLY", description="WEEKLY, BIWEEKLY or MONTHLY (legacy aliases accepted)")
    first_payment_date: Optional[str] = None  # ISO date string

    def frequency(self) -> PaymentFrequency:
        return PaymentFrequency.normalize(self.payment_frequency)

    def first_payment(self) -> Optional[date]:
        return date.fromisoformat(self.first_payment_date) if self.first_payment_date else None


class CreateApplicationRequest(BaseModel):
    tenant_id: str
    product_id: str
    applicant_id: str
    amount: Decimal = Field(..., gt=0)
    term_months: int = Field(..., gt=0)
    payment_frequency: str = "MONTHLY"
    purpose: Optional[str] = Field(None, max_length=255)


class SubmitApplicationRequest(BaseModel):
    snapshot_data: Dict[str, Any] = Field(default_factory=dict, description="Applicant data at submission")
    ip: Optional[str] = None
    device: Optional[str] = Field(None, max_length=255)


class StatusChangeRequest(BaseModel):
    status: str = Field(..., description="Target status code")
    reason: Optional[str] = Field(None, max_length=500)
    internal_note: Optional[str] = Field(None, max_length=2000)

    def target_status(self) -> ApplicationStatus:
        return ApplicationStatus.from_code(self.status)


class ApprovalRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    term_months: Optional[int] = Field(None, gt=0)
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    payment_frequency: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)

    def frequency(self) -> Optional[PaymentFrequency]:
        return PaymentFrequency.normalize(self.payment_frequency) if self.payment_frequency else None


class RejectionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    rejection_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)

    def code(self) -> Optional[RejectionReason]:
        return RejectionReason[self.rejection_code.upper()] if self.rejection_code else None


class CounterOfferRequest(BaseModel):
    amount: Decimal = Field(..., ge=1000)
    term_months: int = Field(..., ge=1, le=120)
    interest_rate: Decimal = Field(..., ge=0, le=100)
    payment_frequency: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)

    def frequency(self) -> Optional[PaymentFrequency]:
        return PaymentFrequency.normalize(self.payment_frequency) if self.payment_frequency else None


class CounterOfferResponseRequest(BaseModel):
    accepted: bool


class MarkSyncedRequest(BaseModel):
    external_id: str = Field(..., min_length=1)
    system: str = Field(..., min_length=1)
    sync_data: Optional[Dict[str, Any]] = None
