"""Deposit amortization - draws a resident's booking amount down across charge heads"""

from decimal import Decimal
from typing import Tuple
from hostel_billing.domain.models import AmortizationResult, ZERO


def _consume(deposit: Decimal, charge: Decimal) -> Tuple[Decimal, Decimal]:
    """Apply deposit to one charge; returns (charge_left, deposit_left)"""
    deduction = min(deposit, charge)
    return max(ZERO, charge - deduction), max(ZERO, deposit - deduction)


def amortize(
    deposit: Decimal,
    rent_amount: Decimal,
    external_amount: Decimal,
    advance_amount: Decimal,
) -> AmortizationResult:
    """
    Allocate a pre-paid deposit across rent, external fee and advance.

    Requirements:
    - Fixed priority: rent first, then external, then advance
    - Each deduction is min(remaining deposit, charge)
    - Outputs and remaining deposit never go below zero
    - Total deducted never exceeds the original deposit

    Args:
        deposit: Remaining booking amount
        rent_amount: Rent charge for the period
        external_amount: External fee for the period
        advance_amount: Advance charge (first-month onboarding or carried forward)

    Returns:
        AmortizationResult with the reduced charges and the deposit left over

    Example:
        deposit 1500, rent 1200, external 300, advance 1200
        → rent 0, external 0, advance 1200, remaining 0
    """
    remaining = max(ZERO, deposit)

    rent, remaining = _consume(remaining, max(ZERO, rent_amount))
    external, remaining = _consume(remaining, max(ZERO, external_amount))
    advance, remaining = _consume(remaining, max(ZERO, advance_amount))

    return AmortizationResult(
        rent=rent,
        external=external,
        advance=advance,
        remaining_deposit=remaining,
    )
