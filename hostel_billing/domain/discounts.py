"""Referral discount aggregation for sponsoring residents"""

from decimal import Decimal
from typing import Iterable
from hostel_billing.domain.models import DiscountBreakdown, DiscountLine, DiscountType, Referral, ZERO

HUNDRED = Decimal("100")


def referral_discount(referral: Referral, category_rent_amount: Decimal) -> Decimal:
    """Discount one referral earns: percent of the sponsor's category rent, or a flat amount"""
    if referral.discount_type == DiscountType.PERCENT:
        return category_rent_amount * referral.discount_amount / HUNDRED
    return referral.discount_amount


def aggregate_discount(referrals: Iterable[Referral], category_rent_amount: Decimal) -> DiscountBreakdown:
    """
    Sum the referral rewards a sponsor accrues.

    Only living referrals that carry a discount definition should be passed in;
    the generator's ReferralSnapshot does that filtering.

    Example:
        two flat 50 referrals + one 10% referral on a 1000 rent → 200
    """
    lines = []
    total = ZERO
    for referral in referrals:
        amount = referral_discount(referral, category_rent_amount)
        total += amount
        lines.append(
            DiscountLine(
                referred_resident_id=referral.resident_id,
                referred_resident_name=referral.resident_name,
                discount_title=referral.discount_title,
                discount_type=referral.discount_type,
                amount=amount,
            )
        )

    return DiscountBreakdown(total=total, lines=lines)
