"""Payment reconciliation - matches pending online claims against ingested raw payments"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hostel_billing.config import settings
from hostel_billing.domain.exceptions import ConflictError
from hostel_billing.domain.matching import evaluate_match
from hostel_billing.domain.models import (
    BillingPolicy,
    MatchReason,
    MatchResult,
    RawPaymentStatus,
    ReconciliationOutcome,
    ReconciliationReport,
    RequestOutcome,
)
from hostel_billing.infrastructure.database.models import PaymentRequest
from hostel_billing.infrastructure.database.repositories import PaymentRequestRepository, RawPaymentRepository
from hostel_billing.infrastructure.observability.metrics import reconciliation_counter
from hostel_billing.services.payment_workflow import PaymentWorkflow
from hostel_billing.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


def audit_note(result: MatchResult) -> str:
    """Human-readable rejection reason stored on both the request and the raw payment"""
    d = result.details
    if result.reason == MatchReason.STALE_PAYMENT:
        return f"{result.reason.value}: received {d.get('received_at')}, window {d.get('window_hours')}h"
    return (
        f"{result.reason.value}: "
        f"number {d.get('request_number')} vs {d.get('payment_number')} (match={d.get('number_match')}), "
        f"amount {d.get('request_amount')} vs {d.get('payment_amount')} (match={d.get('amount_match')})"
    )


class ReconciliationEngine:
    """
    Auto-approves or rejects pending online payment requests.

    Every mutation flips a pending row to a terminal status, so re-running a
    pass never touches a request or raw payment that was already settled.
    """

    def __init__(self, db: Session, policy: Optional[BillingPolicy] = None):
        self.db = db
        self.policy = policy or BillingPolicy.from_settings(settings)
        self.requests = PaymentRequestRepository(db)
        self.raw_payments = RawPaymentRepository(db)
        self.workflow = PaymentWorkflow(db, self.policy)

    def run(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport(started_at=now)

        pending = self.requests.list_pending_online()
        for request in pending:
            outcome = self._process(request, now)
            reconciliation_counter.labels(outcome=outcome.outcome.value, reason=outcome.reason).inc()
            report.results.append(outcome)

        # Approval confirmations only; they go out as one batch
        report.notification_ids = self.workflow.drain_notifications()
        return report

    def _process(self, request: PaymentRequest, now: datetime) -> RequestOutcome:
        request_id, trx_id = request.id, request.trx_id

        try:
            return self._reconcile(request, now)

        except ConflictError as e:
            # Lost a race on a terminal flip; the item was rolled back
            logger.info(f"Reconciliation conflict: {e}", extra={"payment_request_id": request_id, "trx_id": trx_id})
            return RequestOutcome(
                request_id,
                trx_id,
                ReconciliationOutcome.UNMATCHED,
                MatchReason.ALREADY_CONSUMED.value,
                details={"message": str(e)},
            )

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Reconciliation failed: {e}", extra={"payment_request_id": request_id, "trx_id": trx_id})
            return RequestOutcome(request_id, trx_id, ReconciliationOutcome.ERRORED, "database_error", {"message": str(e)})

        except Exception as e:
            self.db.rollback()
            logger.exception("Reconciliation failed", extra={"payment_request_id": request_id, "trx_id": trx_id})
            return RequestOutcome(request_id, trx_id, ReconciliationOutcome.ERRORED, "error", {"message": str(e)})

    def _reconcile(self, request: PaymentRequest, now: datetime) -> RequestOutcome:
        raw = self.raw_payments.get_by_trx_id(request.trx_id)

        # 1. Nothing ingested yet: leave pending for a later pass
        if raw is None:
            return self._unmatched(request, MatchReason.PAYMENT_NOT_FOUND, {"message": "Payment not found"})

        # 2. Terminal raw payments are never reused
        if raw.status != RawPaymentStatus.PENDING:
            return self._unmatched(request, MatchReason.ALREADY_CONSUMED, {"message": f"Payment already {raw.status.value}"})

        # 3-4. Staleness, then number and amount
        result = evaluate_match(
            claimed_number=request.sender_number,
            claimed_amount=request.total_amount,
            received_number=raw.sender_details,
            received_amount=raw.amount,
            received_at=raw.received_at,
            now=now,
            tolerance=self.policy.amount_tolerance,
            window=timedelta(hours=self.policy.staleness_window_hours),
        )

        if not result.matched:
            self.workflow.reject(request.id, audit_note(result), raw_payment=raw, notify=False)
            logger.info(
                "Payment request rejected by reconciliation",
                extra={"payment_request_id": request.id, "trx_id": request.trx_id, "reason": result.reason.value},
            )
            return RequestOutcome(
                request.id,
                request.trx_id,
                ReconciliationOutcome.REJECTED,
                result.reason.value,
                details=dict(result.details),
            )

        # 5. Full match: same atomic approval as a manual one, plus the raw payment flip
        entry = self.workflow.approve(request.id, raw_payment=raw, auto=True)
        return RequestOutcome(
            request.id,
            request.trx_id,
            ReconciliationOutcome.APPROVED,
            result.reason.value,
            details={**result.details, "rent_status": entry.rent_record.status.value},
            settlement_entry_id=entry.id,
        )

    def _unmatched(self, request: PaymentRequest, reason: MatchReason, details: Dict[str, Any]) -> RequestOutcome:
        # Read-only so far; end the implicit transaction
        self.db.rollback()
        return RequestOutcome(request.id, request.trx_id, ReconciliationOutcome.UNMATCHED, reason.value, details)

    def status_overview(self) -> Dict[str, Any]:
        """Counts and recent activity for operators"""
        requests = self.requests.count_online_by_status()
        recent = self.requests.recent_auto_approved(limit=10)
        rejected = self.raw_payments.recent_rejected(limit=5)
        return {
            "pending_requests": requests.get("pending", 0),
            "rejected_requests": requests.get("rejected", 0),
            "approved_requests": requests.get("approved", 0),
            "raw_payments": self.raw_payments.count_by_status(),
            "recent_auto_approvals": [
                {
                    "payment_request_id": request.id,
                    "resident_id": request.resident_id,
                    "trx_id": request.trx_id,
                    "total_amount": str(request.total_amount),
                    "settlement_entry_id": entry.id,
                    "settled_at": entry.settled_at.isoformat(),
                }
                for request, entry in recent
            ],
            "recent_rejected_payments": [
                {
                    "trx_id": raw.trx_id,
                    "amount": str(raw.amount),
                    "note": raw.note,
                    "received_at": raw.received_at.isoformat(),
                }
                for raw in rejected
            ],
        }
