"""Pytest fixtures for testing"""

import importlib.util
import httpx
import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Generator, List, Optional, Sequence, Tuple
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from hostel_billing.api.dependencies import get_notifier_client, get_policy
from hostel_billing.api.main import create_app
from hostel_billing.domain.models import (
    BillingPolicy,
    CallerIdentity,
    CallerRole,
    DiscountType,
    NotificationMessage,
    NotifyOutcome,
    RawPaymentStatus,
    RentStatus,
    ResidentStatus,
)
from hostel_billing.infrastructure.database.models import (
    Base,
    ChargeCategory,
    DiscountDefinition,
    RawPayment,
    RentRecord,
    Resident,
)
from hostel_billing.infrastructure.clients.notifier import NotifierClient
from hostel_billing.infrastructure.database.session import get_db
from hostel_billing.utils.date_utils import utcnow


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

OWNER_ID = 1
OWNER_PHONE = "01800000000"
COLLECTION_NUMBER = "01900000000"

GATEWAY_PATH = Path(__file__).resolve().parents[1] / "mock" / "sms_gateway" / "main.py"


class RecordingNotifier:
    """Notifier double that records every call"""

    def __init__(self, delivered: bool = True, reason: Optional[str] = None):
        self.delivered = delivered
        self.reason = reason
        self.sent: List[Tuple[str, NotificationMessage]] = []
        self.batches: List[List[Tuple[str, NotificationMessage]]] = []

    async def notify(self, recipient: str, message: NotificationMessage) -> NotifyOutcome:
        self.sent.append((recipient, message))
        return NotifyOutcome(delivered=self.delivered, reason=self.reason)

    async def notify_many(self, messages: Sequence[Tuple[str, NotificationMessage]]) -> NotifyOutcome:
        self.batches.append(list(messages))
        return NotifyOutcome(delivered=self.delivered, reason=self.reason)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def policy() -> BillingPolicy:
    return BillingPolicy(collection_number=COLLECTION_NUMBER, owner_phone=OWNER_PHONE)


@pytest.fixture
def client(db: Session, notifier: RecordingNotifier, policy: BillingPolicy) -> TestClient:
    """Create FastAPI test client with test database and recording notifier"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier_client] = lambda: notifier
    app.dependency_overrides[get_policy] = lambda: policy
    return TestClient(app)


@pytest.fixture
def admin() -> CallerIdentity:
    return CallerIdentity(caller_id=900, role=CallerRole.ADMIN, tenant_id=OWNER_ID)


@pytest.fixture
def as_resident():
    """CallerIdentity for a seeded resident"""

    def _caller(resident: Resident) -> CallerIdentity:
        return CallerIdentity(caller_id=resident.id, role=CallerRole.RESIDENT, tenant_id=resident.owner_id)

    return _caller


@pytest.fixture
def headers():
    """Gateway identity headers"""

    def _headers(caller_id: int, role: str = "resident", tenant_id: int = OWNER_ID) -> dict:
        return {"X-Caller-Id": str(caller_id), "X-Caller-Role": role, "X-Tenant-Id": str(tenant_id)}

    return _headers


@pytest.fixture
def make_category(db: Session):
    def _make(rent: str = "1200", external: str = "300", owner_id: int = OWNER_ID, title: str = "Single seat"):
        category = ChargeCategory(
            owner_id=owner_id,
            title=title,
            rent_amount=Decimal(rent),
            external_amount=Decimal(external),
        )
        db.add(category)
        db.commit()
        return category

    return _make


@pytest.fixture
def make_discount(db: Session):
    def _make(discount_type: DiscountType, amount: str, owner_id: int = OWNER_ID, title: str = "Referral"):
        discount = DiscountDefinition(
            owner_id=owner_id,
            title=title,
            discount_type=discount_type,
            discount_amount=Decimal(amount),
        )
        db.add(discount)
        db.commit()
        return discount

    return _make


@pytest.fixture
def make_resident(db: Session):
    def _make(
        category: Optional[ChargeCategory] = None,
        booking: str = "0",
        name: str = "Rahim",
        phone: Optional[str] = "01711111111",
        owner_id: int = OWNER_ID,
        joining_date: date = date(2024, 1, 1),
        status: ResidentStatus = ResidentStatus.LIVING,
        referrer: Optional[Resident] = None,
        discount: Optional[DiscountDefinition] = None,
    ) -> Resident:
        resident = Resident(
            owner_id=owner_id,
            name=name,
            phone=phone,
            category_id=category.id if category else None,
            discount_id=discount.id if discount else None,
            referrer_id=referrer.id if referrer else None,
            booking_amount=Decimal(booking),
            joining_date=joining_date,
            status=status,
        )
        db.add(resident)
        db.commit()
        return resident

    return _make


@pytest.fixture
def make_rent_record(db: Session):
    def _make(
        resident: Resident,
        period: str = "2024-06",
        rent: str = "1200",
        external: str = "300",
        advance: str = "0",
        previous_due: str = "0",
        rent_paid: str = "0",
        external_paid: str = "0",
        advance_paid: str = "0",
        previous_due_paid: str = "0",
        status: RentStatus = RentStatus.UNPAID,
    ) -> RentRecord:
        year, month = (int(part) for part in period.split("-"))
        record = RentRecord(
            resident_id=resident.id,
            owner_id=resident.owner_id,
            category_id=resident.category_id,
            period=period,
            rent_amount=Decimal(rent),
            external_amount=Decimal(external),
            advance_amount=Decimal(advance),
            previous_due=Decimal(previous_due),
            discount_amount=Decimal("0"),
            rent_paid=Decimal(rent_paid),
            external_paid=Decimal(external_paid),
            advance_paid=Decimal(advance_paid),
            previous_due_paid=Decimal(previous_due_paid),
            status=status,
            due_date=date(year, month, 5),
        )
        db.add(record)
        db.commit()
        return record

    return _make


@pytest.fixture
def make_raw_payment(db: Session):
    def _make(
        trx_id: str,
        amount: str,
        sender: str = "01711111111",
        received_at: Optional[datetime] = None,
        status: RawPaymentStatus = RawPaymentStatus.PENDING,
    ) -> RawPayment:
        raw = RawPayment(
            trx_id=trx_id,
            sender_details=sender,
            amount=Decimal(amount),
            received_at=received_at or utcnow() - timedelta(hours=1),
            status=status,
        )
        db.add(raw)
        db.commit()
        return raw

    return _make


@pytest.fixture
def gateway():
    """The mock SMS gateway app, loaded from mock/ with an empty sent log"""
    spec = importlib.util.spec_from_file_location("sms_gateway_main", GATEWAY_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    module.sent.clear()
    return module


@pytest.fixture
def gateway_client(gateway) -> NotifierClient:
    return NotifierClient(base_url="http://sms-gateway", transport=httpx.ASGITransport(app=gateway.app))


@pytest.fixture
def first_lookup_misses():
    """Wrap a repository lookup so its first call returns None, as if a concurrent insert had not committed yet"""

    def _wrap(lookup):
        calls = []

        def wrapped(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return None
            return lookup(*args, **kwargs)

        return wrapped

    return _wrap
