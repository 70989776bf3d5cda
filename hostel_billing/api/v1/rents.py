"""Rent record and settlement history endpoints"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from hostel_billing.api.dependencies import get_caller, get_notifier_client, get_policy, require_admin
from hostel_billing.api.v1.payment_requests import schedule_notifications
from hostel_billing.api.v1.schemas import (
    FullPayRequest,
    RentPaymentCreate,
    RentRecordList,
    RentRecordResponse,
    SettlementEntryList,
    SettlementEntryResponse,
)
from hostel_billing.domain.models import BillingPolicy, CallerIdentity, PaymentSplit, RentStatus
from hostel_billing.infrastructure.clients.notifier import NotifierClient
from hostel_billing.infrastructure.database.session import get_db
from hostel_billing.services.payment_workflow import PaymentWorkflow

router = APIRouter()

PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


@router.get("/rents", response_model=RentRecordList)
def list_rents(
    period: Optional[str] = Query(None, pattern=PERIOD_PATTERN, description="Billing period YYYY-MM"),
    status: Optional[RentStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: CallerIdentity = Depends(get_caller),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
):
    """
    Rent records, newest period first.

    Residents see their own; admins see every record in their tenant.
    """
    total, items = PaymentWorkflow(db, policy).list_rents(caller, period, status, limit, offset)
    return RentRecordList(total=total, items=[RentRecordResponse.model_validate(r) for r in items])


@router.get("/settlements", response_model=SettlementEntryList)
def list_settlements(
    resident_id: Optional[int] = Query(None, description="Admin only; ignored for residents"),
    period: Optional[str] = Query(None, pattern=PERIOD_PATTERN),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: CallerIdentity = Depends(get_caller),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
):
    total, items = PaymentWorkflow(db, policy).list_settlements(caller, resident_id, period, limit, offset)
    return SettlementEntryList(total=total, items=[SettlementEntryResponse.model_validate(e) for e in items])


@router.post("/rents/{rent_id}/full-pay", response_model=SettlementEntryResponse)
def full_pay_rent(
    rent_id: int,
    background_tasks: BackgroundTasks,
    body: Optional[FullPayRequest] = None,
    caller: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    """Mark everything still owed on the record as paid"""
    body = body or FullPayRequest()
    workflow = PaymentWorkflow(db, policy)
    entry = workflow.full_pay(caller, rent_id, body.paid_method)
    schedule_notifications(background_tasks, db, notifier, workflow.drain_notifications())
    return entry


@router.post("/rents/{rent_id}/pay", response_model=SettlementEntryResponse)
def pay_rent(
    rent_id: int,
    body: RentPaymentCreate,
    background_tasks: BackgroundTasks,
    caller: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    """Record a payment the admin collected in person; partial amounts are allowed"""
    split = PaymentSplit(
        rent=body.rent_amount,
        advance=body.advance_amount,
        external=body.external_amount,
        previous_due=body.previous_due_amount,
    )
    workflow = PaymentWorkflow(db, policy)
    entry = workflow.record_payment(caller, rent_id, split, body.paid_method)
    schedule_notifications(background_tasks, db, notifier, workflow.drain_notifications())
    return entry
