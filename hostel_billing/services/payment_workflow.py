"""Payment request workflow - submission, approval, rejection, cancellation and full pay"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hostel_billing.config import settings
from hostel_billing.domain.charges import apply_payment, derive_status, outstanding
from hostel_billing.domain.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from hostel_billing.domain.models import (
    ZERO,
    BillingPolicy,
    CallerIdentity,
    PaymentMethod,
    PaymentRequestStatus,
    PaymentSplit,
    RawPaymentStatus,
    RentStatus,
    SettlementSource,
    ensure_transition,
)
from hostel_billing.infrastructure.database.models import (
    PaymentRequest,
    RawPayment,
    RentRecord,
    SettlementEntry,
)
from hostel_billing.infrastructure.database.repositories import (
    PaymentRequestRepository,
    RawPaymentRepository,
    RentRecordRepository,
    SettlementRepository,
)
from hostel_billing.infrastructure.database.session import transaction
from hostel_billing.infrastructure.observability.metrics import payment_request_transition_counter, record_settlement
from hostel_billing.services import notifications
from hostel_billing.services.rent_generation import due_split, paid_split
from hostel_billing.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

SUPERSEDED_BY_FULL_PAY = "superseded by full payment"


def split_of(request: PaymentRequest) -> PaymentSplit:
    return PaymentSplit(
        rent=request.rent_amount,
        advance=request.advance_amount,
        external=request.external_amount,
        previous_due=request.previous_due_amount,
    )


def _validate_split(split: PaymentSplit) -> None:
    for head, amount in (
        ("rent", split.rent),
        ("advance", split.advance),
        ("external", split.external),
        ("previous_due", split.previous_due),
    ):
        if amount < ZERO:
            raise ValidationError(f"{head} amount must not be negative")
    if split.total <= ZERO:
        raise ValidationError("Total amount must be greater than zero")


def _set_paid(record: RentRecord, paid: PaymentSplit) -> None:
    record.rent_paid = paid.rent
    record.advance_paid = paid.advance
    record.external_paid = paid.external
    record.previous_due_paid = paid.previous_due


class PaymentWorkflow:
    """
    State machine for payment requests: pending -> approved | rejected | cancelled.

    Every public mutation runs in one transaction. Outbox rows written by a
    committed mutation are collected in `notification_ids` for dispatch.
    """

    def __init__(self, db: Session, policy: Optional[BillingPolicy] = None):
        self.db = db
        self.policy = policy or BillingPolicy.from_settings(settings)
        self.rents = RentRecordRepository(db)
        self.requests = PaymentRequestRepository(db)
        self.raw_payments = RawPaymentRepository(db)
        self.settlements = SettlementRepository(db)
        self.notification_ids: List[int] = []

    def drain_notifications(self) -> List[int]:
        ids, self.notification_ids = self.notification_ids, []
        return ids

    # Resident operations

    def submit(
        self,
        caller: CallerIdentity,
        rent_record_id: int,
        split: PaymentSplit,
        method: PaymentMethod,
        sender_number: Optional[str] = None,
        trx_id: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Create a pending claim against the caller's own rent record.

        Raises:
            ValidationError: negative amounts, zero total, missing online fields
            NotFoundError: unknown rent record
            PermissionDeniedError: record belongs to someone else
            ConflictError: the record already has a pending request
        """
        _validate_split(split)

        sender_number = (sender_number or "").strip() or None
        trx_id = (trx_id or "").strip() or None
        if method == PaymentMethod.ONLINE and not (sender_number and trx_id):
            raise ValidationError("Online payments require sender number and transaction id")

        outbox_ids = []
        try:
            with transaction(self.db):
                record = self.rents.get(rent_record_id)
                if record is None or record.owner_id != caller.tenant_id:
                    raise NotFoundError(f"Rent record {rent_record_id} not found")
                if record.resident_id != caller.caller_id:
                    raise PermissionDeniedError("Rent record belongs to another resident")
                if self.requests.get_pending_for_rent(record.id):
                    raise ConflictError("A pending payment request already exists for this rent record")

                request = self.requests.add(
                    PaymentRequest(
                        resident_id=record.resident_id,
                        owner_id=record.owner_id,
                        rent_record_id=record.id,
                        category_id=record.category_id,
                        payment_method=method,
                        sender_number=sender_number if method == PaymentMethod.ONLINE else None,
                        trx_id=trx_id if method == PaymentMethod.ONLINE else None,
                        rent_amount=split.rent,
                        advance_amount=split.advance,
                        external_amount=split.external,
                        previous_due_amount=split.previous_due,
                        total_amount=split.total,
                        status=PaymentRequestStatus.PENDING,
                    )
                )

                resident = record.resident
                row = notifications.enqueue(
                    self.db,
                    self.policy.owner_phone,
                    notifications.payment_request_received(resident, request),
                    owner_id=record.owner_id,
                )
                if row is not None:
                    outbox_ids.append(row.id)

        except IntegrityError:
            # Partial unique index: a concurrent submit won. Anything else is not a conflict.
            if self.requests.get_pending_for_rent(rent_record_id) is None:
                raise
            raise ConflictError("A pending payment request already exists for this rent record")

        self.notification_ids.extend(outbox_ids)
        payment_request_transition_counter.labels(status=PaymentRequestStatus.PENDING.value).inc()
        logger.info(
            "Payment request submitted",
            extra={"payment_request_id": request.id, "rent_record_id": rent_record_id, "method": method.value},
        )
        return request

    def cancel(self, caller: CallerIdentity, request_id: int) -> PaymentRequest:
        with transaction(self.db):
            request = self._get_request(request_id, caller.tenant_id)
            if request.resident_id != caller.caller_id:
                raise PermissionDeniedError("Only the resident who submitted a request can cancel it")
            self._transition(request, PaymentRequestStatus.CANCELLED)

        payment_request_transition_counter.labels(status=PaymentRequestStatus.CANCELLED.value).inc()
        return request

    # Admin / reconciliation operations

    def approve(
        self,
        request_id: int,
        approver: Optional[CallerIdentity] = None,
        raw_payment: Optional[RawPayment] = None,
        auto: bool = False,
    ) -> SettlementEntry:
        """
        Apply a pending request to its rent record.

        One transaction covers: rent record lock, request pending -> approved,
        settlement entry, paid fields and status, the optional raw payment
        pending -> approved, and the outbox row. Any failure rolls back all of it.

        Raises:
            NotFoundError: unknown request (or outside the approver's tenant)
            InvalidTransitionError: request is no longer pending
            ConflictError: raw payment was consumed by someone else
        """
        outbox_ids = []
        with transaction(self.db):
            request = self._get_request(request_id, approver.tenant_id if approver else None)
            ensure_transition("payment request", request.status, PaymentRequestStatus.APPROVED)

            record = self.rents.get_for_update(request.rent_record_id)
            if record is None:
                raise NotFoundError(f"Rent record {request.rent_record_id} not found")

            self._transition(request, PaymentRequestStatus.APPROVED)

            if raw_payment is not None:
                note = f"Approved for payment request {request.id}"
                if not self.raw_payments.transition(raw_payment.id, RawPaymentStatus.APPROVED, note=note):
                    raise ConflictError(f"Raw payment {raw_payment.trx_id} already consumed")

            applied = split_of(request)
            details = {"payment_request_id": request.id, "trx_id": request.trx_id}
            if raw_payment is not None:
                details["raw_payment_id"] = raw_payment.id
            if approver is not None:
                details["approved_by"] = approver.caller_id

            source = SettlementSource.AUTO_RECONCILIATION if auto else SettlementSource.MANUAL_APPROVAL
            entry = self._settle(record, applied, request.payment_method.value, source, request.id, details)

            resident = request.resident
            if auto:
                message = notifications.payment_confirmation(resident, request.total_amount, "online (auto-approved)")
            else:
                message = notifications.payment_request_status(resident, request)
            row = notifications.enqueue(self.db, resident.contact_number, message, owner_id=request.owner_id)
            if row is not None:
                outbox_ids.append(row.id)

        self.notification_ids.extend(outbox_ids)
        payment_request_transition_counter.labels(status=PaymentRequestStatus.APPROVED.value).inc()
        record_settlement(entry.source.value, applied.total)
        logger.info(
            "Payment request approved",
            extra={"payment_request_id": request.id, "settlement_entry_id": entry.id, "auto": auto},
        )
        return entry

    def reject(
        self,
        request_id: int,
        reason: str,
        rejector: Optional[CallerIdentity] = None,
        raw_payment: Optional[RawPayment] = None,
        notify: bool = True,
    ) -> PaymentRequest:
        """Mark a pending request rejected; the rent record is left untouched"""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required")

        outbox_ids = []
        with transaction(self.db):
            request = self._get_request(request_id, rejector.tenant_id if rejector else None)
            self._transition(request, PaymentRequestStatus.REJECTED, rejection_reason=reason)

            if raw_payment is not None:
                if not self.raw_payments.transition(raw_payment.id, RawPaymentStatus.REJECTED, note=reason):
                    raise ConflictError(f"Raw payment {raw_payment.trx_id} already consumed")

            if notify:
                resident = request.resident
                row = notifications.enqueue(
                    self.db,
                    resident.contact_number,
                    notifications.payment_request_status(resident, request),
                    owner_id=request.owner_id,
                )
                if row is not None:
                    outbox_ids.append(row.id)

        self.notification_ids.extend(outbox_ids)
        payment_request_transition_counter.labels(status=PaymentRequestStatus.REJECTED.value).inc()
        return request

    def full_pay(self, admin: CallerIdentity, rent_record_id: int, paid_method: str) -> SettlementEntry:
        """
        Settle everything still owed on a rent record in one step.

        A pending request on the same record is rejected as superseded.
        """
        paid_method = (paid_method or "").strip()
        if not paid_method:
            raise ValidationError("Payment method is required")

        outbox_ids = []
        superseded = None
        with transaction(self.db):
            record = self.rents.get_for_update(rent_record_id)
            if record is None or record.owner_id != admin.tenant_id:
                raise NotFoundError(f"Rent record {rent_record_id} not found")

            remaining = outstanding(due_split(record), paid_split(record))
            if remaining.total <= ZERO:
                raise ConflictError(f"Rent record {rent_record_id} has nothing outstanding")

            pending = self.requests.get_pending_for_rent(record.id)
            if pending is not None:
                self._transition(pending, PaymentRequestStatus.REJECTED, rejection_reason=SUPERSEDED_BY_FULL_PAY)
                superseded = pending.id

            details = {"approved_by": admin.caller_id}
            if superseded is not None:
                details["superseded_request_id"] = superseded
            entry = self._settle(record, remaining, paid_method, SettlementSource.FULL_PAY, None, details)

            resident = record.resident
            row = notifications.enqueue(
                self.db,
                resident.contact_number,
                notifications.rent_payment_confirmation(resident, record, remaining),
                owner_id=record.owner_id,
            )
            if row is not None:
                outbox_ids.append(row.id)

        self.notification_ids.extend(outbox_ids)
        if superseded is not None:
            payment_request_transition_counter.labels(status=PaymentRequestStatus.REJECTED.value).inc()
        record_settlement(SettlementSource.FULL_PAY.value, remaining.total)
        return entry

    def record_payment(
        self, admin: CallerIdentity, rent_record_id: int, split: PaymentSplit, paid_method: str
    ) -> SettlementEntry:
        """
        Record money the admin collected directly, without a resident claim.

        Any split is accepted, so repeated calls walk a record through
        partial to paid. A pending request on the record is left alone.

        Raises:
            ValidationError: negative amounts, zero total, blank payment method
            NotFoundError: unknown rent record (or outside the admin's tenant)
        """
        _validate_split(split)
        paid_method = (paid_method or "").strip()
        if not paid_method:
            raise ValidationError("Payment method is required")

        outbox_ids = []
        with transaction(self.db):
            record = self.rents.get_for_update(rent_record_id)
            if record is None or record.owner_id != admin.tenant_id:
                raise NotFoundError(f"Rent record {rent_record_id} not found")

            details = {"recorded_by": admin.caller_id}
            entry = self._settle(record, split, paid_method, SettlementSource.ADMIN_PAYMENT, None, details)

            resident = record.resident
            row = notifications.enqueue(
                self.db,
                resident.contact_number,
                notifications.rent_payment_confirmation(resident, record, split),
                owner_id=record.owner_id,
            )
            if row is not None:
                outbox_ids.append(row.id)

        self.notification_ids.extend(outbox_ids)
        record_settlement(SettlementSource.ADMIN_PAYMENT.value, split.total)
        logger.info(
            "Admin payment recorded",
            extra={"rent_record_id": rent_record_id, "settlement_entry_id": entry.id, "status": record.status.value},
        )
        return entry

    # Listings

    def get_request(self, caller: CallerIdentity, request_id: int) -> PaymentRequest:
        request = self._get_request(request_id, caller.tenant_id)
        if not caller.is_admin and request.resident_id != caller.caller_id:
            raise NotFoundError(f"Payment request {request_id} not found")
        return request

    def list_requests(
        self,
        caller: CallerIdentity,
        status: Optional[PaymentRequestStatus] = None,
        method: Optional[PaymentMethod] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[PaymentRequest]]:
        resident_id = None if caller.is_admin else caller.caller_id
        return self.requests.list(caller.tenant_id, resident_id, status, method, limit, offset)

    def list_rents(
        self,
        caller: CallerIdentity,
        period: Optional[str] = None,
        status: Optional[RentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[RentRecord]]:
        resident_id = None if caller.is_admin else caller.caller_id
        return self.rents.list(caller.tenant_id, resident_id, period, status, limit, offset)

    def list_settlements(
        self,
        caller: CallerIdentity,
        resident_id: Optional[int] = None,
        period: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[SettlementEntry]]:
        if not caller.is_admin:
            resident_id = caller.caller_id
        return self.settlements.list(caller.tenant_id, resident_id, period, limit, offset)

    # Internals

    def _get_request(self, request_id: int, tenant_id: Optional[int]) -> PaymentRequest:
        request = self.requests.get(request_id)
        if request is None or (tenant_id is not None and request.owner_id != tenant_id):
            raise NotFoundError(f"Payment request {request_id} not found")
        return request

    def _transition(self, request: PaymentRequest, target: PaymentRequestStatus, **values) -> None:
        """Guarded flip; the conditional update catches a writer that got there first"""
        current = request.status
        ensure_transition("payment request", current, target)
        if not self.requests.transition(request.id, current, target, **values):
            raise ConflictError(f"Payment request {request.id} was modified concurrently")
        self.db.refresh(request)

    def _settle(
        self,
        record: RentRecord,
        applied: PaymentSplit,
        payment_method: str,
        source: SettlementSource,
        request_id: Optional[int],
        details: dict,
    ) -> SettlementEntry:
        """Write the settlement entry, then move the record's paid fields and status"""
        due = due_split(record)
        before = outstanding(due, paid_split(record))
        now = utcnow()

        entry = self.settlements.add(
            SettlementEntry(
                rent_record_id=record.id,
                payment_request_id=request_id,
                resident_id=record.resident_id,
                owner_id=record.owner_id,
                category_id=record.category_id,
                period=record.period,
                settled_at=now,
                payment_method=payment_method,
                source=source,
                auto_approved=source == SettlementSource.AUTO_RECONCILIATION,
                due_rent=before.rent,
                due_advance=before.advance,
                due_external=before.external,
                due_previous=before.previous_due,
                paid_rent=applied.rent,
                paid_advance=applied.advance,
                paid_external=applied.external,
                paid_previous=applied.previous_due,
                details=details,
            )
        )

        paid = apply_payment(paid_split(record), applied)
        _set_paid(record, paid)
        record.status = derive_status(due, paid, current=record.status)
        record.paid_at = now
        record.paid_method = payment_method
        self.db.flush()
        return entry
