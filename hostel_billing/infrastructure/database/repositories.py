"""Data access layer for billing entities"""

from collections import defaultdict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from hostel_billing.domain.models import (
    NotificationStatus,
    PaymentMethod,
    PaymentRequestStatus,
    RawPaymentStatus,
    Referral,
    RentStatus,
    ResidentStatus,
    SettlementSource,
)
from hostel_billing.infrastructure.database.models import (
    DiscountDefinition,
    NotificationOutbox,
    PaymentRequest,
    RawPayment,
    RentRecord,
    Resident,
    SettlementEntry,
)
from hostel_billing.utils.date_utils import utcnow


def _paginate(query, limit: int, offset: int, order_by) -> Tuple[int, list]:
    total = query.count()
    items = query.order_by(order_by).limit(limit).offset(offset).all()
    return total, items


class ResidentRepository:
    """Repository for residents and their referral graph"""

    def __init__(self, db: Session):
        self.db = db

    def list_billable(self, run_date: date) -> List[Resident]:
        """Living residents who have already joined"""
        return (
            self.db.query(Resident)
            .options(joinedload(Resident.category))
            .filter(Resident.status == ResidentStatus.LIVING, Resident.joining_date <= run_date)
            .order_by(Resident.id)
            .all()
        )

    def referrals_by_sponsor(self) -> Dict[int, List[Referral]]:
        """Living referred residents that carry a discount, grouped by sponsor id"""
        rows = (
            self.db.query(Resident, DiscountDefinition)
            .join(DiscountDefinition, Resident.discount_id == DiscountDefinition.id)
            .filter(Resident.status == ResidentStatus.LIVING, Resident.referrer_id.isnot(None))
            .order_by(Resident.id)
            .all()
        )
        grouped: Dict[int, List[Referral]] = defaultdict(list)
        for resident, discount in rows:
            grouped[resident.referrer_id].append(
                Referral(
                    resident_id=resident.id,
                    resident_name=resident.name,
                    discount_title=discount.title,
                    discount_type=discount.discount_type,
                    discount_amount=discount.discount_amount,
                )
            )
        return dict(grouped)


class RentRecordRepository:
    """Repository for monthly rent records"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, rent_record_id: int) -> Optional[RentRecord]:
        return self.db.get(RentRecord, rent_record_id)

    def get_for_update(self, rent_record_id: int) -> Optional[RentRecord]:
        """Fetch and row-lock a rent record for the rest of the transaction"""
        return (
            self.db.query(RentRecord)
            .filter(RentRecord.id == rent_record_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_for_period(self, resident_id: int, period: str) -> Optional[RentRecord]:
        return (
            self.db.query(RentRecord)
            .filter(RentRecord.resident_id == resident_id, RentRecord.period == period)
            .first()
        )

    def latest_before(self, resident_id: int, period: str) -> Optional[RentRecord]:
        """Most recent record from an earlier period (YYYY-MM sorts chronologically)"""
        return (
            self.db.query(RentRecord)
            .filter(RentRecord.resident_id == resident_id, RentRecord.period < period)
            .order_by(RentRecord.period.desc())
            .first()
        )

    def add(self, record: RentRecord) -> RentRecord:
        """Insert and flush; a duplicate (resident, period) raises IntegrityError here"""
        self.db.add(record)
        self.db.flush()
        return record

    def list(
        self,
        owner_id: int,
        resident_id: Optional[int] = None,
        period: Optional[str] = None,
        status: Optional[RentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[RentRecord]]:
        query = self.db.query(RentRecord).filter(RentRecord.owner_id == owner_id)
        if resident_id is not None:
            query = query.filter(RentRecord.resident_id == resident_id)
        if period:
            query = query.filter(RentRecord.period == period)
        if status:
            query = query.filter(RentRecord.status == status)
        return _paginate(query, limit, offset, RentRecord.period.desc())


class PaymentRequestRepository:
    """Repository for payment requests"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, request_id: int) -> Optional[PaymentRequest]:
        return self.db.get(PaymentRequest, request_id)

    def get_pending_for_rent(self, rent_record_id: int) -> Optional[PaymentRequest]:
        return (
            self.db.query(PaymentRequest)
            .filter(
                PaymentRequest.rent_record_id == rent_record_id,
                PaymentRequest.status == PaymentRequestStatus.PENDING,
            )
            .first()
        )

    def add(self, request: PaymentRequest) -> PaymentRequest:
        self.db.add(request)
        self.db.flush()
        return request

    def list_pending_online(self) -> List[PaymentRequest]:
        """Online claims that carry enough data to reconcile"""
        return (
            self.db.query(PaymentRequest)
            .options(joinedload(PaymentRequest.resident))
            .filter(
                PaymentRequest.status == PaymentRequestStatus.PENDING,
                PaymentRequest.payment_method == PaymentMethod.ONLINE,
                PaymentRequest.sender_number.isnot(None),
                PaymentRequest.trx_id.isnot(None),
            )
            .order_by(PaymentRequest.id)
            .all()
        )

    def transition(
        self,
        request_id: int,
        current: PaymentRequestStatus,
        target: PaymentRequestStatus,
        **values: Any,
    ) -> bool:
        """
        Conditional status flip: UPDATE ... WHERE id = :id AND status = :current.

        Returns False when another writer already moved the request on.
        """
        updated = (
            self.db.query(PaymentRequest)
            .filter(PaymentRequest.id == request_id, PaymentRequest.status == current)
            .update({PaymentRequest.status: target, **values}, synchronize_session="fetch")
        )
        return updated == 1

    def list(
        self,
        owner_id: Optional[int] = None,
        resident_id: Optional[int] = None,
        status: Optional[PaymentRequestStatus] = None,
        method: Optional[PaymentMethod] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[PaymentRequest]]:
        query = self.db.query(PaymentRequest)
        if owner_id is not None:
            query = query.filter(PaymentRequest.owner_id == owner_id)
        if resident_id is not None:
            query = query.filter(PaymentRequest.resident_id == resident_id)
        if status:
            query = query.filter(PaymentRequest.status == status)
        if method:
            query = query.filter(PaymentRequest.payment_method == method)
        return _paginate(query, limit, offset, PaymentRequest.created_at.desc())

    def count_online_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(PaymentRequest.status, func.count(PaymentRequest.id))
            .filter(PaymentRequest.payment_method == PaymentMethod.ONLINE)
            .group_by(PaymentRequest.status)
            .all()
        )
        return {status.value: count for status, count in rows}

    def recent_auto_approved(self, limit: int = 10) -> List[Tuple[PaymentRequest, SettlementEntry]]:
        return (
            self.db.query(PaymentRequest, SettlementEntry)
            .join(SettlementEntry, SettlementEntry.payment_request_id == PaymentRequest.id)
            .filter(SettlementEntry.source == SettlementSource.AUTO_RECONCILIATION)
            .order_by(SettlementEntry.settled_at.desc())
            .limit(limit)
            .all()
        )


class RawPaymentRepository:
    """Read access plus terminal status flips for ingested transactions"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_trx_id(self, trx_id: str) -> Optional[RawPayment]:
        return self.db.query(RawPayment).filter(RawPayment.trx_id == trx_id).first()

    def transition(self, raw_payment_id: int, target: RawPaymentStatus, note: Optional[str] = None) -> bool:
        """Flip a pending raw payment to a terminal status; False if it was already consumed"""
        updated = (
            self.db.query(RawPayment)
            .filter(RawPayment.id == raw_payment_id, RawPayment.status == RawPaymentStatus.PENDING)
            .update(
                {RawPayment.status: target, RawPayment.processed_at: utcnow(), RawPayment.note: note},
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def count_by_status(self) -> Dict[str, int]:
        rows = self.db.query(RawPayment.status, func.count(RawPayment.id)).group_by(RawPayment.status).all()
        return {status.value: count for status, count in rows}

    def recent_rejected(self, limit: int = 5) -> List[RawPayment]:
        return (
            self.db.query(RawPayment)
            .filter(RawPayment.status == RawPaymentStatus.REJECTED)
            .order_by(RawPayment.received_at.desc())
            .limit(limit)
            .all()
        )


class SettlementRepository:
    """Append-only settlement history"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, entry: SettlementEntry) -> SettlementEntry:
        self.db.add(entry)
        self.db.flush()
        return entry

    def list(
        self,
        owner_id: int,
        resident_id: Optional[int] = None,
        period: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[SettlementEntry]]:
        query = self.db.query(SettlementEntry).filter(SettlementEntry.owner_id == owner_id)
        if resident_id is not None:
            query = query.filter(SettlementEntry.resident_id == resident_id)
        if period:
            query = query.filter(SettlementEntry.period == period)
        return _paginate(query, limit, offset, SettlementEntry.settled_at.desc())


class OutboxRepository:
    """Notification outbox rows"""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        event_type: str,
        recipient: str,
        payload: Dict[str, Any],
        owner_id: Optional[int] = None,
    ) -> NotificationOutbox:
        row = NotificationOutbox(
            event_type=event_type,
            recipient=recipient,
            payload=payload,
            owner_id=owner_id,
            status=NotificationStatus.PENDING,
            attempts=0,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def get_many(self, ids: Iterable[int]) -> List[NotificationOutbox]:
        ids = list(ids)
        if not ids:
            return []
        return self.db.query(NotificationOutbox).filter(NotificationOutbox.id.in_(ids)).order_by(NotificationOutbox.id).all()

    def list_retryable(self, max_attempts: int, limit: int = 200) -> List[NotificationOutbox]:
        return (
            self.db.query(NotificationOutbox)
            .filter(
                NotificationOutbox.status.in_([NotificationStatus.PENDING, NotificationStatus.FAILED]),
                NotificationOutbox.attempts < max_attempts,
            )
            .order_by(NotificationOutbox.id)
            .limit(limit)
            .all()
        )
