"""Scheduled job triggers - rent generation, reconciliation and notification retry"""

import time
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hostel_billing.api.dependencies import get_notifier_client, get_policy, get_request_id
from hostel_billing.api.v1.schemas import (
    DispatchSummarySchema,
    GenerationReportResponse,
    GenerationRunRequest,
    ReconciliationReportResponse,
    RequestOutcomeSchema,
    ResidentOutcomeSchema,
)
from hostel_billing.domain.models import BillingPolicy, DispatchSummary, GenerationOutcome, ReconciliationOutcome
from hostel_billing.infrastructure.clients.notifier import NotifierClient
from hostel_billing.infrastructure.database.session import get_db
from hostel_billing.infrastructure.observability.logging import log_generation_run, log_reconciliation_run
from hostel_billing.services.notifications import NotificationDispatcher
from hostel_billing.services.reconciliation import ReconciliationEngine
from hostel_billing.services.rent_generation import RentGenerator
from hostel_billing.utils.date_utils import utcnow

router = APIRouter()


def _run_failed(db: Session, request_id: str, job: str, error: Exception) -> HTTPException:
    """Whole-run failure: 503 when the store is unavailable, 500 otherwise"""
    db.rollback()
    if isinstance(error, SQLAlchemyError):
        logging.error(f"{job} failed, database unavailable: {error}", extra={"request_id": request_id})
        return HTTPException(status_code=503, detail="Database unavailable")
    logging.error(f"{job} failed: {error}", extra={"request_id": request_id})
    return HTTPException(status_code=500, detail="Internal server error")


async def _notify(db: Session, request_id: str, dispatch) -> DispatchSummary:
    """Notification trouble is reported next to the run, never instead of it"""
    try:
        return await dispatch
    except Exception as e:
        db.rollback()
        logging.error(f"Notification dispatch failed: {e}", extra={"request_id": request_id})
        return DispatchSummary(errors=[str(e)])


@router.post("/jobs/rent-generation", response_model=GenerationReportResponse)
async def run_rent_generation(
    request: Request,
    body: Optional[GenerationRunRequest] = Body(None),
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    """
    Generate this month's rent records.

    Flow:
    1. Snapshot referrals, then create one record per billable resident (own transaction each)
    2. Dispatch rent reminders on the bounded pool after all records are committed
    3. Return per-resident outcomes and the notification summary

    Safe to re-trigger: residents already billed for the period are skipped.
    """
    start_time = time.time()
    request_id = get_request_id(request)
    run_date = (body.run_date if body else None) or utcnow().date()

    try:
        report = RentGenerator(db, policy).run(run_date)
    except Exception as e:
        raise _run_failed(db, request_id, "Rent generation", e)

    report.notifications = await _notify(
        db, request_id, NotificationDispatcher(db, notifier).dispatch(report.notification_ids)
    )

    created = report.count(GenerationOutcome.CREATED)
    skipped = report.count(GenerationOutcome.SKIPPED)
    errored = report.count(GenerationOutcome.ERRORED)
    duration_ms = (time.time() - start_time) * 1000
    log_generation_run(request_id, report.period, created, skipped, errored, duration_ms)

    return GenerationReportResponse(
        run_date=report.run_date,
        period=report.period,
        total_residents=report.total_residents,
        created=created,
        skipped=skipped,
        errored=errored,
        outcomes=[ResidentOutcomeSchema.model_validate(o) for o in report.outcomes],
        notifications=DispatchSummarySchema.model_validate(report.notifications),
    )


@router.post("/jobs/reconciliation", response_model=ReconciliationReportResponse)
async def run_reconciliation(
    request: Request,
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
    policy: BillingPolicy = Depends(get_policy),
):
    """
    Match pending online payment requests against ingested raw payments.

    Auto-approved residents receive one batched confirmation call after the pass.
    """
    start_time = time.time()
    request_id = get_request_id(request)

    try:
        report = ReconciliationEngine(db, policy).run(utcnow())
    except Exception as e:
        raise _run_failed(db, request_id, "Reconciliation", e)

    report.notifications = await _notify(
        db, request_id, NotificationDispatcher(db, notifier).dispatch_batch(report.notification_ids)
    )

    approved = report.count(ReconciliationOutcome.APPROVED)
    rejected = report.count(ReconciliationOutcome.REJECTED)
    unmatched = report.count(ReconciliationOutcome.UNMATCHED)
    errored = report.count(ReconciliationOutcome.ERRORED)
    duration_ms = (time.time() - start_time) * 1000
    log_reconciliation_run(request_id, approved, rejected, unmatched, errored, duration_ms)

    return ReconciliationReportResponse(
        started_at=report.started_at,
        processed=len(report.results),
        approved=approved,
        rejected=rejected,
        unmatched=unmatched,
        errored=errored,
        results=[RequestOutcomeSchema.model_validate(r) for r in report.results],
        notifications=DispatchSummarySchema.model_validate(report.notifications),
    )


@router.get("/jobs/reconciliation/status")
def reconciliation_status(
    request: Request,
    db: Session = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> Dict[str, Any]:
    """Pending/rejected counts and recent auto-approvals"""
    try:
        return ReconciliationEngine(db, policy).status_overview()
    except Exception as e:
        raise _run_failed(db, get_request_id(request), "Reconciliation status", e)


@router.post("/jobs/notifications", response_model=DispatchSummarySchema)
async def retry_notifications(
    request: Request,
    db: Session = Depends(get_db),
    notifier: NotifierClient = Depends(get_notifier_client),
):
    """Resend outbox rows left pending or failed by earlier runs"""
    try:
        summary = await NotificationDispatcher(db, notifier).dispatch_pending()
    except Exception as e:
        raise _run_failed(db, get_request_id(request), "Notification retry", e)
    return DispatchSummarySchema.model_validate(summary)
