"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hostel_billing.domain.models import (
    GenerationOutcome,
    PaymentMethod,
    PaymentRequestStatus,
    ReconciliationOutcome,
    RentStatus,
    SettlementSource,
)


class PaymentRequestCreate(BaseModel):
    """Request body for POST /v1/payment-requests"""

    rent_record_id: int = Field(..., gt=0)
    payment_method: PaymentMethod
    rent_amount: Decimal = Field(Decimal("0"), ge=0)
    advance_amount: Decimal = Field(Decimal("0"), ge=0)
    external_amount: Decimal = Field(Decimal("0"), ge=0)
    previous_due_amount: Decimal = Field(Decimal("0"), ge=0)
    sender_number: Optional[str] = Field(None, max_length=32, description="Mobile-money number the payment came from")
    trx_id: Optional[str] = Field(None, max_length=64, description="Mobile-money transaction id")


class RejectRequest(BaseModel):
    """Request body for POST /v1/payment-requests/{id}/reject"""

    reason: str = Field(..., min_length=1)


class FullPayRequest(BaseModel):
    """Request body for POST /v1/rents/{id}/full-pay"""

    paid_method: str = Field(PaymentMethod.ON_HAND.value, min_length=1, max_length=32)


class RentPaymentCreate(BaseModel):
    """Request body for POST /v1/rents/{id}/pay; any split of the heads, at least one non-zero"""

    rent_amount: Decimal = Field(Decimal("0"), ge=0)
    advance_amount: Decimal = Field(Decimal("0"), ge=0)
    external_amount: Decimal = Field(Decimal("0"), ge=0)
    previous_due_amount: Decimal = Field(Decimal("0"), ge=0)
    paid_method: str = Field(PaymentMethod.ON_HAND.value, min_length=1, max_length=32)


class GenerationRunRequest(BaseModel):
    """Optional body for POST /v1/jobs/rent-generation"""

    run_date: Optional[date] = None


class PaymentRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resident_id: int
    rent_record_id: int
    payment_method: PaymentMethod
    sender_number: Optional[str] = None
    trx_id: Optional[str] = None
    rent_amount: Decimal
    advance_amount: Decimal
    external_amount: Decimal
    previous_due_amount: Decimal
    total_amount: Decimal
    status: PaymentRequestStatus
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RentRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resident_id: int
    category_id: Optional[int] = None
    period: str
    rent_amount: Decimal
    external_amount: Decimal
    advance_amount: Decimal
    previous_due: Decimal
    discount_amount: Decimal
    rent_paid: Decimal
    advance_paid: Decimal
    external_paid: Decimal
    previous_due_paid: Decimal
    status: RentStatus
    due_date: date
    paid_at: Optional[datetime] = None
    paid_method: Optional[str] = None


class SettlementEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rent_record_id: int
    payment_request_id: Optional[int] = None
    resident_id: int
    period: str
    settled_at: datetime
    payment_method: str
    source: SettlementSource
    auto_approved: bool
    due_rent: Decimal
    due_advance: Decimal
    due_external: Decimal
    due_previous: Decimal
    paid_rent: Decimal
    paid_advance: Decimal
    paid_external: Decimal
    paid_previous: Decimal
    details: Optional[Dict[str, Any]] = None


class PaymentRequestList(BaseModel):
    total: int
    items: List[PaymentRequestResponse]


class RentRecordList(BaseModel):
    total: int
    items: List[RentRecordResponse]


class SettlementEntryList(BaseModel):
    total: int
    items: List[SettlementEntryResponse]


class DispatchSummarySchema(BaseModel):
    """Notification delivery result reported next to the business outcome"""

    model_config = ConfigDict(from_attributes=True)

    attempted: int
    delivered: int
    failed: int
    batched: bool
    errors: List[str] = []


class ResidentOutcomeSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resident_id: int
    resident_name: str
    outcome: GenerationOutcome
    reason: Optional[str] = None
    rent_record_id: Optional[int] = None
    details: Dict[str, Any] = {}


class GenerationReportResponse(BaseModel):
    """Response for POST /v1/jobs/rent-generation"""

    run_date: date
    period: str
    total_residents: int
    created: int
    skipped: int
    errored: int
    outcomes: List[ResidentOutcomeSchema]
    notifications: DispatchSummarySchema


class RequestOutcomeSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: int
    trx_id: Optional[str] = None
    outcome: ReconciliationOutcome
    reason: str
    details: Dict[str, Any] = {}
    settlement_entry_id: Optional[int] = None


class ReconciliationReportResponse(BaseModel):
    """Response for POST /v1/jobs/reconciliation"""

    started_at: datetime
    processed: int
    approved: int
    rejected: int
    unmatched: int
    errored: int
    results: List[RequestOutcomeSchema]
    notifications: DispatchSummarySchema
