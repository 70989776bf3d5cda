"""SQLAlchemy ORM models for the billing ledger"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import declarative_base, object_session, relationship

from hostel_billing.domain.exceptions import ImmutableRecordError
from hostel_billing.domain.models import (
    DiscountType,
    NotificationStatus,
    PaymentMethod,
    PaymentRequestStatus,
    RawPaymentStatus,
    RentStatus,
    ResidentStatus,
    SettlementSource,
)
from hostel_billing.utils.date_utils import utcnow

Base = declarative_base()


def _enum(enum_cls, name: str) -> Enum:
    """Store enum values (not member names) so raw SQL predicates read naturally"""
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [m.value for m in members],
    )


def _money(nullable: bool = False, default=0):
    return Column(Numeric(12, 2), nullable=nullable, default=default)


class ChargeCategory(Base):
    """Tenant-scoped rent plan. Rent records snapshot its amounts."""

    __tablename__ = "charge_category"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    title = Column(String(120), nullable=False)
    rent_amount = _money()
    external_amount = _money()
    created_at = Column(DateTime, nullable=False, default=utcnow)


class DiscountDefinition(Base):
    """Referral reward definition, credited to the sponsor of the resident holding it"""

    __tablename__ = "discount_definition"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    title = Column(String(120), nullable=False)
    discount_type = Column(_enum(DiscountType, "discount_type"), nullable=False)
    discount_amount = _money()
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Resident(Base):
    """Person billed monthly; `booking_amount` is the undrawn deposit"""

    __tablename__ = "resident"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(32), nullable=True)
    sms_phone = Column(String(32), nullable=True)
    category_id = Column(Integer, ForeignKey("charge_category.id"), nullable=True)
    discount_id = Column(Integer, ForeignKey("discount_definition.id"), nullable=True)
    referrer_id = Column(Integer, ForeignKey("resident.id"), nullable=True, index=True)
    booking_amount = _money()
    joining_date = Column(Date, nullable=False)
    status = Column(_enum(ResidentStatus, "resident_status"), nullable=False, default=ResidentStatus.LIVING, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    category = relationship("ChargeCategory")
    discount = relationship("DiscountDefinition")
    referrer = relationship("Resident", remote_side=[id])

    @property
    def contact_number(self):
        return self.sms_phone or self.phone


class RentRecord(Base):
    """One resident's bill for one calendar month"""

    __tablename__ = "rent_record"
    __table_args__ = (UniqueConstraint("resident_id", "period", name="uq_rent_record_resident_period"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    resident_id = Column(Integer, ForeignKey("resident.id", ondelete="RESTRICT"), nullable=False, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("charge_category.id"), nullable=True)
    period = Column(String(7), nullable=False, index=True)  # YYYY-MM

    rent_amount = _money()
    external_amount = _money()
    advance_amount = _money()
    previous_due = _money()
    discount_amount = _money()

    rent_paid = _money()
    advance_paid = _money()
    external_paid = _money()
    previous_due_paid = _money()

    status = Column(_enum(RentStatus, "rent_status"), nullable=False, default=RentStatus.UNPAID, index=True)
    due_date = Column(Date, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    paid_method = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    resident = relationship("Resident")
    category = relationship("ChargeCategory")


class PaymentRequest(Base):
    """A resident's claim to have paid some or all of a rent record"""

    __tablename__ = "payment_request"
    __table_args__ = (
        # At most one pending request per rent record
        Index(
            "uq_payment_request_pending_rent",
            "rent_record_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    resident_id = Column(Integer, ForeignKey("resident.id"), nullable=False, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    rent_record_id = Column(Integer, ForeignKey("rent_record.id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("charge_category.id"), nullable=True)

    payment_method = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    sender_number = Column(String(32), nullable=True)
    trx_id = Column(String(64), nullable=True, index=True)

    rent_amount = _money()
    advance_amount = _money()
    external_amount = _money()
    previous_due_amount = _money()
    total_amount = _money()

    status = Column(
        _enum(PaymentRequestStatus, "payment_request_status"),
        nullable=False,
        default=PaymentRequestStatus.PENDING,
        index=True,
    )
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    resident = relationship("Resident")
    rent_record = relationship("RentRecord")
    settlement_entry = relationship("SettlementEntry", uselist=False, viewonly=True)


class RawPayment(Base):
    """Mobile-money transaction appended by the external ingestion feed"""

    __tablename__ = "raw_payment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trx_id = Column(String(64), nullable=False, unique=True, index=True)
    sender_details = Column(String(64), nullable=True)
    amount = _money()
    received_at = Column(DateTime, nullable=False)
    status = Column(
        _enum(RawPaymentStatus, "raw_payment_status"),
        nullable=False,
        default=RawPaymentStatus.PENDING,
        index=True,
    )
    processed_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)


class SettlementEntry(Base):
    """Append-only record of one applied payment. Rows are never updated or deleted."""

    __tablename__ = "settlement_entry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rent_record_id = Column(Integer, ForeignKey("rent_record.id", ondelete="RESTRICT"), nullable=False, index=True)
    payment_request_id = Column(Integer, ForeignKey("payment_request.id"), nullable=True, unique=True)
    resident_id = Column(Integer, ForeignKey("resident.id"), nullable=False, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    category_id = Column(Integer, nullable=True)
    period = Column(String(7), nullable=False, index=True)
    settled_at = Column(DateTime, nullable=False, default=utcnow)
    payment_method = Column(String(32), nullable=False)
    source = Column(_enum(SettlementSource, "settlement_source"), nullable=False)
    auto_approved = Column(Boolean, nullable=False, default=False)

    # Outstanding per head immediately before this payment
    due_rent = _money()
    due_advance = _money()
    due_external = _money()
    due_previous = _money()

    # Amounts this payment applied
    paid_rent = _money()
    paid_advance = _money()
    paid_external = _money()
    paid_previous = _money()

    details = Column(JSON, nullable=True)

    rent_record = relationship("RentRecord")


@event.listens_for(SettlementEntry, "before_update")
def _reject_settlement_update(mapper, connection, target):
    session = object_session(target)
    if session is not None and session.is_modified(target, include_collections=False):
        raise ImmutableRecordError(f"Settlement entry {target.id} is append-only")


@event.listens_for(SettlementEntry, "before_delete")
def _reject_settlement_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Settlement entry {target.id} is append-only")


class NotificationOutbox(Base):
    """Notification queue with delivery tracking; rows are written inside business transactions"""

    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(64), nullable=False)
    recipient = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(
        _enum(NotificationStatus, "notification_status"),
        nullable=False,
        default=NotificationStatus.PENDING,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
