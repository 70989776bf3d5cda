"""Domain models - pure Python enums and dataclasses representing billing entities"""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from hostel_billing.domain.exceptions import InvalidTransitionError

ZERO = Decimal("0")


class ResidentStatus(str, enum.Enum):
    LIVING = "living"
    LEAVE = "leave"


class DiscountType(str, enum.Enum):
    PERCENT = "percent"
    FLAT = "flat"


class RentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMethod(str, enum.Enum):
    ON_HAND = "on_hand"
    ONLINE = "online"


class PaymentRequestStatus(str, enum.Enum):
    """Lifecycle of a resident's payment claim. Every state but PENDING is terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "PaymentRequestStatus") -> bool:
        return target in _REQUEST_TRANSITIONS.get(self, frozenset())

    @property
    def is_terminal(self) -> bool:
        return not _REQUEST_TRANSITIONS.get(self)


class RawPaymentStatus(str, enum.Enum):
    """Ingested transaction state. APPROVED and REJECTED are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    def can_transition_to(self, target: "RawPaymentStatus") -> bool:
        return target in _RAW_PAYMENT_TRANSITIONS.get(self, frozenset())

    @property
    def is_terminal(self) -> bool:
        return not _RAW_PAYMENT_TRANSITIONS.get(self)


_REQUEST_TRANSITIONS = {
    PaymentRequestStatus.PENDING: frozenset(
        {PaymentRequestStatus.APPROVED, PaymentRequestStatus.REJECTED, PaymentRequestStatus.CANCELLED}
    ),
}

_RAW_PAYMENT_TRANSITIONS = {
    RawPaymentStatus.PENDING: frozenset({RawPaymentStatus.APPROVED, RawPaymentStatus.REJECTED}),
}


def ensure_transition(entity: str, current: enum.Enum, target: enum.Enum) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed"""
    if not current.can_transition_to(target):
        raise InvalidTransitionError(entity, current.value, target.value)


class SettlementSource(str, enum.Enum):
    MANUAL_APPROVAL = "manual_approval"
    AUTO_RECONCILIATION = "auto_reconciliation"
    FULL_PAY = "full_pay"
    ADMIN_PAYMENT = "admin_payment"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(str, enum.Enum):
    RENT_REMINDER = "rent_reminder"
    PAYMENT_REQUEST_RECEIVED = "payment_request_received"
    PAYMENT_REQUEST_STATUS = "payment_request_status"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    RENT_PAYMENT_CONFIRMATION = "rent_payment_confirmation"


class CallerRole(str, enum.Enum):
    RESIDENT = "resident"
    ADMIN = "admin"


class GenerationOutcome(str, enum.Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    ERRORED = "errored"


class ReconciliationOutcome(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    UNMATCHED = "unmatched"
    ERRORED = "errored"


class MatchReason(str, enum.Enum):
    MATCHED = "matched"
    PAYMENT_NOT_FOUND = "payment_not_found"
    ALREADY_CONSUMED = "already_consumed"
    STALE_PAYMENT = "stale_payment"
    NUMBER_MISMATCH = "number_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass(frozen=True)
class BillingPolicy:
    """Business constants applied by the generator, workflow and reconciliation engine"""

    onboarding_rent_amount: Decimal = Decimal("1200")
    onboarding_advance_amount: Decimal = Decimal("1200")
    amount_tolerance: Decimal = Decimal("1.0")
    staleness_window_hours: int = 48
    rent_due_day: int = 5
    collection_number: str = ""
    owner_phone: str = ""

    @classmethod
    def from_settings(cls, settings) -> "BillingPolicy":
        return cls(
            onboarding_rent_amount=settings.onboarding_rent_amount,
            onboarding_advance_amount=settings.onboarding_advance_amount,
            amount_tolerance=settings.amount_tolerance,
            staleness_window_hours=settings.staleness_window_hours,
            rent_due_day=settings.rent_due_day,
            collection_number=settings.collection_number,
            owner_phone=settings.owner_phone,
        )


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller as asserted by the upstream gateway"""

    caller_id: int
    role: CallerRole
    tenant_id: int

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN


@dataclass
class AmortizationResult:
    """Charges left after the deposit has been drawn down"""

    rent: Decimal
    external: Decimal
    advance: Decimal
    remaining_deposit: Decimal


@dataclass
class Referral:
    """A living resident referred by the sponsor, with the discount they carry"""

    resident_id: int
    resident_name: str
    discount_title: str
    discount_type: DiscountType
    discount_amount: Decimal


@dataclass
class DiscountLine:
    referred_resident_id: int
    referred_resident_name: str
    discount_title: str
    discount_type: DiscountType
    amount: Decimal


@dataclass
class DiscountBreakdown:
    total: Decimal
    lines: List[DiscountLine] = field(default_factory=list)


@dataclass
class PaymentSplit:
    """Amounts split across the four charge heads"""

    rent: Decimal = ZERO
    advance: Decimal = ZERO
    external: Decimal = ZERO
    previous_due: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.rent + self.advance + self.external + self.previous_due


@dataclass
class MatchResult:
    matched: bool
    reason: MatchReason
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationMessage:
    """Template key plus content parameters; template text belongs to the notifier"""

    template: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotifyOutcome:
    """Delivery result; a batch call also carries one result per message, in request order"""

    delivered: bool
    reason: Optional[str] = None
    results: List["NotifyOutcome"] = field(default_factory=list)


@dataclass
class DispatchSummary:
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    batched: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class ResidentOutcome:
    """Per-resident result of a generation run"""

    resident_id: int
    resident_name: str
    outcome: GenerationOutcome
    reason: Optional[str] = None
    rent_record_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationReport:
    run_date: date
    period: str
    total_residents: int = 0
    outcomes: List[ResidentOutcome] = field(default_factory=list)
    notification_ids: List[int] = field(default_factory=list)
    notifications: DispatchSummary = field(default_factory=DispatchSummary)

    def count(self, outcome: GenerationOutcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)


@dataclass
class RequestOutcome:
    """Per-request result of a reconciliation pass"""

    request_id: int
    trx_id: Optional[str]
    outcome: ReconciliationOutcome
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)
    settlement_entry_id: Optional[int] = None


@dataclass
class ReconciliationReport:
    started_at: datetime
    results: List[RequestOutcome] = field(default_factory=list)
    notification_ids: List[int] = field(default_factory=list)
    notifications: DispatchSummary = field(default_factory=DispatchSummary)

    def count(self, outcome: ReconciliationOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)
