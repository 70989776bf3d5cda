"""Rent record arithmetic - carry-forward, outstanding balances and status derivation"""

from decimal import Decimal
from typing import Tuple
from hostel_billing.domain.models import PaymentSplit, RentStatus, ZERO


def billable_total(split: PaymentSplit) -> Decimal:
    """Rent + external + previous due. Advance is tracked separately and never counts toward status."""
    return split.rent + split.external + split.previous_due


def carry_forward(due: PaymentSplit, paid: PaymentSplit) -> Tuple[Decimal, Decimal]:
    """
    Balances a prior rent record passes on to the next period.

    Returns:
        (previous_due, carry_forward_advance), both floored at zero
    """
    previous_due = max(ZERO, billable_total(due) - billable_total(paid))
    advance = max(ZERO, due.advance - paid.advance)
    return previous_due, advance


def outstanding(due: PaymentSplit, paid: PaymentSplit) -> PaymentSplit:
    """Per-head amount still owed"""
    return PaymentSplit(
        rent=max(ZERO, due.rent - paid.rent),
        advance=max(ZERO, due.advance - paid.advance),
        external=max(ZERO, due.external - paid.external),
        previous_due=max(ZERO, due.previous_due - paid.previous_due),
    )


def apply_payment(paid: PaymentSplit, payment: PaymentSplit) -> PaymentSplit:
    return PaymentSplit(
        rent=paid.rent + payment.rent,
        advance=paid.advance + payment.advance,
        external=paid.external + payment.external,
        previous_due=paid.previous_due + payment.previous_due,
    )


def derive_status(due: PaymentSplit, paid: PaymentSplit, current: RentStatus = RentStatus.UNPAID) -> RentStatus:
    """
    Status after a payment is applied.

    - paid:    billable paid >= billable due
    - partial: something billable paid, threshold not met
    - current status otherwise (advance-only payments leave it alone)
    """
    total_paid = billable_total(paid)
    if total_paid >= billable_total(due):
        return RentStatus.PAID
    if total_paid > ZERO:
        return RentStatus.PARTIAL
    return current
