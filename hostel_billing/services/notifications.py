"""Notification outbox - message content, enqueueing and post-commit dispatch"""

import asyncio
import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from hostel_billing.config import settings
from hostel_billing.domain.models import (
    DispatchSummary,
    NotificationEvent,
    NotificationMessage,
    NotificationStatus,
    NotifyOutcome,
    PaymentSplit,
)
from hostel_billing.infrastructure.clients.notifier import NotifierClient
from hostel_billing.infrastructure.database.models import NotificationOutbox, PaymentRequest, RentRecord, Resident
from hostel_billing.infrastructure.database.repositories import OutboxRepository
from hostel_billing.infrastructure.database.session import transaction
from hostel_billing.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

_RETRYABLE = (NotificationStatus.PENDING, NotificationStatus.FAILED)


def _money(value: Optional[Decimal]) -> str:
    return str(value if value is not None else Decimal("0"))


def rent_reminder(resident: Resident, record: RentRecord, collection_number: str) -> NotificationMessage:
    total = record.rent_amount + record.external_amount + record.advance_amount + record.previous_due
    return NotificationMessage(
        template=NotificationEvent.RENT_REMINDER.value,
        params={
            "name": resident.name,
            "period": record.period,
            "rent_due": _money(record.rent_amount),
            "external_due": _money(record.external_amount),
            "advance_due": _money(record.advance_amount),
            "previous_due": _money(record.previous_due),
            "total_due": _money(total),
            "due_date": record.due_date.isoformat(),
            "collection_number": collection_number,
        },
    )


def payment_request_received(resident: Resident, request: PaymentRequest) -> NotificationMessage:
    """Owner-facing notice that a resident submitted a claim"""
    return NotificationMessage(
        template=NotificationEvent.PAYMENT_REQUEST_RECEIVED.value,
        params={
            "name": resident.name,
            "phone": resident.phone,
            "total_amount": _money(request.total_amount),
            "payment_method": request.payment_method.value,
            "sender_number": request.sender_number,
            "trx_id": request.trx_id,
            "category": resident.category.title if resident.category else None,
        },
    )


def payment_request_status(resident: Resident, request: PaymentRequest) -> NotificationMessage:
    return NotificationMessage(
        template=NotificationEvent.PAYMENT_REQUEST_STATUS.value,
        params={
            "name": resident.name,
            "status": request.status.value,
            "total_amount": _money(request.total_amount),
            "rent_amount": _money(request.rent_amount),
            "advance_amount": _money(request.advance_amount),
            "external_amount": _money(request.external_amount),
            "previous_due_amount": _money(request.previous_due_amount),
            "payment_method": request.payment_method.value,
            "rejection_reason": request.rejection_reason,
        },
    )


def payment_confirmation(resident: Resident, amount: Decimal, payment_method: str) -> NotificationMessage:
    return NotificationMessage(
        template=NotificationEvent.PAYMENT_CONFIRMATION.value,
        params={"name": resident.name, "amount": _money(amount), "payment_method": payment_method},
    )


def rent_payment_confirmation(resident: Resident, record: RentRecord, applied: PaymentSplit) -> NotificationMessage:
    return NotificationMessage(
        template=NotificationEvent.RENT_PAYMENT_CONFIRMATION.value,
        params={
            "name": resident.name,
            "period": record.period,
            "rent_paid": _money(applied.rent),
            "advance_paid": _money(applied.advance),
            "external_paid": _money(applied.external),
            "previous_due_paid": _money(applied.previous_due),
            "total_paid": _money(applied.total),
            "payment_method": record.paid_method,
        },
    )


def enqueue(
    db: Session,
    recipient: Optional[str],
    message: NotificationMessage,
    owner_id: Optional[int] = None,
) -> Optional[NotificationOutbox]:
    """
    Write an outbox row in the caller's transaction.

    Residents without a phone number are skipped; there is nobody to notify.
    """
    if not recipient:
        logger.info("Notification skipped, no recipient", extra={"template": message.template, "owner_id": owner_id})
        return None
    return OutboxRepository(db).enqueue(message.template, recipient, message.params, owner_id)


def message_from_row(row: NotificationOutbox) -> NotificationMessage:
    return NotificationMessage(template=row.event_type, params=dict(row.payload or {}))


def pairs_from_rows(rows: Iterable[NotificationOutbox]) -> List[Tuple[str, NotificationMessage]]:
    """(recipient, message) pairs for a batched notifier call"""
    return [(row.recipient, message_from_row(row)) for row in rows]


class NotificationDispatcher:
    """
    Sends outbox rows after the business transaction has committed.

    Delivery outcomes are written back to the rows; failures never touch
    business state and stay retryable until max_attempts.
    """

    def __init__(
        self,
        db: Session,
        client: NotifierClient,
        concurrency: int | None = None,
        max_attempts: int | None = None,
        call_timeout: float | None = None,
    ):
        self.db = db
        self.client = client
        self.outbox = OutboxRepository(db)
        self.concurrency = concurrency or settings.notification_concurrency
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.call_timeout = call_timeout or settings.notification_timeout_seconds

    async def dispatch(self, ids: Sequence[int]) -> DispatchSummary:
        """Send each row individually on a bounded pool"""
        rows = self._sendable(ids)
        if not rows:
            return DispatchSummary()

        semaphore = asyncio.Semaphore(self.concurrency)

        async def send(recipient: str, message: NotificationMessage) -> NotifyOutcome:
            async with semaphore:
                return await self._call(self.client.notify(recipient, message))

        # Rows are read up front; the session is not touched while sends are in flight
        outcomes = await asyncio.gather(*(send(recipient, message) for recipient, message in pairs_from_rows(rows)))
        return self._record(list(zip(rows, outcomes)), batched=False)

    async def dispatch_batch(self, ids: Sequence[int]) -> DispatchSummary:
        """
        Send all rows in one notifier call.

        Per-message results are applied to their own rows, so a partial batch
        failure only leaves the undelivered rows retryable. A call that fails
        as a whole (timeout, transport error) marks every row with its outcome.
        """
        rows = self._sendable(ids)
        if not rows:
            return DispatchSummary(batched=True)

        outcome = await self._call(self.client.notify_many(pairs_from_rows(rows)))
        if len(outcome.results) == len(rows):
            outcomes = outcome.results
        else:
            outcomes = [outcome] * len(rows)
        return self._record(list(zip(rows, outcomes)), batched=True)

    async def dispatch_pending(self, limit: int = 200) -> DispatchSummary:
        """Retry rows left pending or failed by earlier runs"""
        rows = self.outbox.list_retryable(self.max_attempts, limit=limit)
        return await self.dispatch([row.id for row in rows])

    def _sendable(self, ids: Sequence[int]) -> List[NotificationOutbox]:
        return [
            row
            for row in self.outbox.get_many(ids)
            if row.status in _RETRYABLE and row.attempts < self.max_attempts
        ]

    async def _call(self, awaitable) -> NotifyOutcome:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            return NotifyOutcome(delivered=False, reason=f"Notification timed out after {self.call_timeout}s")
        except Exception as e:
            logger.exception("Notifier call raised")
            return NotifyOutcome(delivered=False, reason=str(e) or e.__class__.__name__)

    def _record(self, results: List[Tuple[NotificationOutbox, NotifyOutcome]], batched: bool) -> DispatchSummary:
        summary = DispatchSummary(attempted=len(results), batched=batched)
        now = utcnow()

        with transaction(self.db):
            for row, outcome in results:
                row.attempts = (row.attempts or 0) + 1
                row.last_attempt_at = now
                if outcome.delivered:
                    row.status = NotificationStatus.SENT
                    row.last_error = None
                    summary.delivered += 1
                else:
                    row.status = NotificationStatus.FAILED
                    row.last_error = outcome.reason
                    summary.failed += 1
                    summary.errors.append(f"{row.recipient}: {outcome.reason}")

        if summary.failed:
            logger.warning(
                "Notifications not delivered",
                extra={"attempted": summary.attempted, "failed": summary.failed, "batched": batched},
            )
        return summary
