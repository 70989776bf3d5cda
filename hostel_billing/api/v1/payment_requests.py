"""Payment request endpoints - resident submission/cancellation, admin review"""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from hostel_billing.api.dependencies import (
    get_caller,
    get_notifier_client,
    get_policy,
    get_request_id,
    require_admin,
    require_resident,
)
from hostel_billing.api.v1.schemas import (
    PaymentRequestCreate,
    PaymentRequestList,
    PaymentRequestResponse,
    RejectRequest,
    SettlementEntryResponse,
)
from hostel_billing.domain.models import (
    BillingPolicy,
    CallerIdentity,
    PaymentMethod,
    PaymentRequestStatus,
    PaymentSplit,
)
from hostel_billing.infrastructure.clients.notifier import NotifierClient
from hostel_billing.infrastructure.database.session import get_db
from hostel_billing.services.notifications import NotificationDispatcher
from hostel_billing.services.payment_workflow import PaymentWorkflow

router = APIRouter()


def schedule_notifications(
    background_tasks: BackgroundTasks,
    db: Session,
    notifier: NotifierClient,
    ids: List[int],
) -> None:
    """Send outbox rows once the response is out; the business change is already committed"""
    if ids:
        background_tasks.add_task(NotificationDispatcher(db, notifier).dispatch, ids)


@router.post("/payment-requests", response_model=PaymentRequestResponse, status_code=201)
def submit_payment_request(
    body: PaymentRequestCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    caller: CallerIdentity = Depends(require_resident),
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    """
    Submit a payment claim for one of the caller's rent records.

    Online claims need sender_number and trx_id; they are matched by the
    reconciliation job. On-hand claims wait for an admin.
    """
    workflow = PaymentWorkflow(db, policy)
    payment_request = workflow.submit(
        caller,
        rent_record_id=body.rent_record_id,
        split=PaymentSplit(
            rent=body.rent_amount,
            advance=body.advance_amount,
            external=body.external_amount,
            previous_due=body.previous_due_amount,
        ),
        method=body.payment_method,
        sender_number=body.sender_number,
        trx_id=body.trx_id,
    )
    logging.info(
        "Payment request created",
        extra={"request_id": get_request_id(request), "payment_request_id": payment_request.id},
    )
    schedule_notifications(background_tasks, db, notifier, workflow.drain_notifications())
    return payment_request


@router.delete("/payment-requests/{request_id}", response_model=PaymentRequestResponse)
def cancel_payment_request(
    request_id: int,
    caller: CallerIdentity = Depends(require_resident),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
):
    """Cancel the caller's own pending request"""
    return PaymentWorkflow(db, policy).cancel(caller, request_id)


@router.get("/payment-requests", response_model=PaymentRequestList)
def list_payment_requests(
    status: Optional[PaymentRequestStatus] = Query(None),
    method: Optional[PaymentMethod] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: CallerIdentity = Depends(get_caller),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
):
    """Residents see their own requests; admins see the whole tenant"""
    total, items = PaymentWorkflow(db, policy).list_requests(caller, status, method, limit, offset)
    return PaymentRequestList(total=total, items=[PaymentRequestResponse.model_validate(r) for r in items])


@router.get("/payment-requests/{request_id}", response_model=PaymentRequestResponse)
def get_payment_request(
    request_id: int,
    caller: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
):
    return PaymentWorkflow(db, policy).get_request(caller, request_id)


@router.post("/payment-requests/{request_id}/approve", response_model=SettlementEntryResponse)
def approve_payment_request(
    request_id: int,
    background_tasks: BackgroundTasks,
    caller: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    """
    Approve a pending request.

    Returns:
        The settlement entry written by the approval
    """
    workflow = PaymentWorkflow(db, policy)
    entry = workflow.approve(request_id, approver=caller)
    schedule_notifications(background_tasks, db, notifier, workflow.drain_notifications())
    return entry


@router.post("/payment-requests/{request_id}/reject", response_model=PaymentRequestResponse)
def reject_payment_request(
    request_id: int,
    body: RejectRequest,
    background_tasks: BackgroundTasks,
    caller: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    workflow = PaymentWorkflow(db, policy)
    payment_request = workflow.reject(request_id, body.reason, rejector=caller)
    schedule_notifications(background_tasks, db, notifier, workflow.drain_notifications())
    return payment_request
