"""Monthly rent generation - one rent record per living resident per period"""

import logging
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hostel_billing.config import settings
from hostel_billing.domain.amortization import amortize
from hostel_billing.domain.charges import carry_forward
from hostel_billing.domain.discounts import aggregate_discount
from hostel_billing.domain.models import (
    ZERO,
    BillingPolicy,
    GenerationOutcome,
    GenerationReport,
    PaymentSplit,
    Referral,
    ResidentOutcome,
    RentStatus,
)
from hostel_billing.infrastructure.database.models import RentRecord, Resident
from hostel_billing.infrastructure.database.repositories import RentRecordRepository, ResidentRepository
from hostel_billing.infrastructure.database.session import transaction
from hostel_billing.infrastructure.observability.metrics import rent_generation_counter
from hostel_billing.services import notifications
from hostel_billing.utils.date_utils import due_date_for, period_key

logger = logging.getLogger(__name__)

ALREADY_GENERATED = "already_generated"
NO_CATEGORY = "no_category"


class ReferralSnapshot:
    """Living referrals with a discount, grouped by sponsor, read once at run start"""

    def __init__(self, by_sponsor: Dict[int, List[Referral]]):
        self._by_sponsor = by_sponsor

    @classmethod
    def load(cls, residents: ResidentRepository) -> "ReferralSnapshot":
        return cls(residents.referrals_by_sponsor())

    def for_sponsor(self, sponsor_id: int) -> List[Referral]:
        return self._by_sponsor.get(sponsor_id, [])


def due_split(record: RentRecord) -> PaymentSplit:
    return PaymentSplit(
        rent=record.rent_amount,
        advance=record.advance_amount,
        external=record.external_amount,
        previous_due=record.previous_due,
    )


def paid_split(record: RentRecord) -> PaymentSplit:
    return PaymentSplit(
        rent=record.rent_paid,
        advance=record.advance_paid,
        external=record.external_paid,
        previous_due=record.previous_due_paid,
    )


class RentGenerator:
    """
    Generates the period's rent records.

    Each resident is handled in its own transaction so one failure never
    blocks the others. The (resident_id, period) unique constraint is the
    duplicate guard; the existence check only avoids a pointless insert.
    """

    def __init__(self, db: Session, policy: Optional[BillingPolicy] = None):
        self.db = db
        self.policy = policy or BillingPolicy.from_settings(settings)
        self.residents = ResidentRepository(db)
        self.rents = RentRecordRepository(db)

    def run(self, run_date: date) -> GenerationReport:
        period = period_key(run_date)
        report = GenerationReport(run_date=run_date, period=period)

        residents = self.residents.list_billable(run_date)
        snapshot = ReferralSnapshot.load(self.residents)
        report.total_residents = len(residents)

        for resident in residents:
            outcome = self._process(resident, run_date, period, snapshot)
            rent_generation_counter.labels(outcome=outcome.outcome.value).inc()
            report.outcomes.append(outcome)
            notification_id = outcome.details.pop("notification_id", None)
            if notification_id is not None:
                report.notification_ids.append(notification_id)

        return report

    def _process(self, resident: Resident, run_date: date, period: str, snapshot: ReferralSnapshot) -> ResidentOutcome:
        resident_id, resident_name = resident.id, resident.name

        try:
            with transaction(self.db):
                return self._generate(resident, run_date, period, snapshot)

        except IntegrityError as e:
            # Only a row that now exists means another run won the insert
            if self.rents.get_for_period(resident_id, period) is not None:
                logger.info("Rent record already generated", extra={"resident_id": resident_id, "period": period})
                return ResidentOutcome(resident_id, resident_name, GenerationOutcome.SKIPPED, reason=ALREADY_GENERATED)
            logger.error(f"Rent generation failed: {e}", extra={"resident_id": resident_id, "period": period})
            return ResidentOutcome(resident_id, resident_name, GenerationOutcome.ERRORED, reason=f"database error: {e}")

        except SQLAlchemyError as e:
            logger.error(f"Rent generation failed: {e}", extra={"resident_id": resident_id, "period": period})
            return ResidentOutcome(resident_id, resident_name, GenerationOutcome.ERRORED, reason=f"database error: {e}")

        except Exception as e:
            logger.exception("Rent generation failed", extra={"resident_id": resident_id, "period": period})
            return ResidentOutcome(resident_id, resident_name, GenerationOutcome.ERRORED, reason=str(e))

    def _generate(self, resident: Resident, run_date: date, period: str, snapshot: ReferralSnapshot) -> ResidentOutcome:
        if self.rents.get_for_period(resident.id, period):
            return ResidentOutcome(resident.id, resident.name, GenerationOutcome.SKIPPED, reason=ALREADY_GENERATED)

        category = resident.category
        if category is None:
            return ResidentOutcome(resident.id, resident.name, GenerationOutcome.SKIPPED, reason=NO_CATEGORY)

        # 1. Base charges: carried forward from the latest prior record, or onboarding values
        prior = self.rents.latest_before(resident.id, period)
        if prior is not None:
            previous_due, advance = carry_forward(due_split(prior), paid_split(prior))
            rent = category.rent_amount
        else:
            previous_due = ZERO
            rent = self.policy.onboarding_rent_amount
            advance = self.policy.onboarding_advance_amount
        external = category.external_amount

        # 2. Referral reward for this resident as sponsor
        discount = aggregate_discount(snapshot.for_sponsor(resident.id), category.rent_amount)

        # 3. Draw the deposit down: rent, then external, then advance
        original_booking = resident.booking_amount or ZERO
        amortized = amortize(original_booking, rent, external, advance)
        resident.booking_amount = amortized.remaining_deposit

        record = self.rents.add(
            RentRecord(
                resident_id=resident.id,
                owner_id=resident.owner_id,
                category_id=category.id,
                period=period,
                rent_amount=amortized.rent,
                external_amount=amortized.external,
                advance_amount=amortized.advance,
                previous_due=previous_due,
                discount_amount=discount.total,
                rent_paid=ZERO,
                advance_paid=ZERO,
                external_paid=ZERO,
                previous_due_paid=ZERO,
                status=RentStatus.UNPAID,
                due_date=due_date_for(run_date, self.policy.rent_due_day),
            )
        )

        row = notifications.enqueue(
            self.db,
            resident.contact_number,
            notifications.rent_reminder(resident, record, self.policy.collection_number),
            owner_id=resident.owner_id,
        )

        details = {
            "first_month": prior is None,
            "rent_amount": str(record.rent_amount),
            "external_amount": str(record.external_amount),
            "advance_amount": str(record.advance_amount),
            "previous_due": str(record.previous_due),
            "discount_amount": str(discount.total),
            "discounts": [
                {
                    "referred_resident_id": line.referred_resident_id,
                    "referred_resident_name": line.referred_resident_name,
                    "discount_title": line.discount_title,
                    "discount_type": line.discount_type.value,
                    "amount": str(line.amount),
                }
                for line in discount.lines
            ],
            "original_booking": str(original_booking),
            "remaining_booking": str(amortized.remaining_deposit),
        }
        if row is not None:
            details["notification_id"] = row.id

        return ResidentOutcome(
            resident.id,
            resident.name,
            GenerationOutcome.CREATED,
            rent_record_id=record.id,
            details=details,
        )
