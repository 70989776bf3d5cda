"""Match rules used to verify a claimed online payment against an ingested transaction"""

import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from hostel_billing.domain.models import MatchReason, MatchResult

_NUMBER_NOISE = re.compile(r"[\s\-()]")


def normalize_number(value: Optional[str]) -> str:
    """Strip whitespace and common separators so '017 1234-5678' compares as '01712345678'"""
    if not value:
        return ""
    return _NUMBER_NOISE.sub("", value)


def numbers_match(claimed: Optional[str], received: Optional[str]) -> bool:
    """
    Substring match in either direction.

    Providers report the sender as a full number, a masked number or a
    number with a country prefix, so '01712345678' must match '8801712345678'
    and the other way round.
    """
    a = normalize_number(claimed)
    b = normalize_number(received)
    if not a or not b:
        return False
    return a in b or b in a


def amounts_match(claimed: Decimal, received: Decimal, tolerance: Decimal) -> bool:
    return abs(claimed - received) <= tolerance


def is_stale(received_at: datetime, now: datetime, window: timedelta) -> bool:
    return now - received_at > window


def evaluate_match(
    claimed_number: Optional[str],
    claimed_amount: Decimal,
    received_number: Optional[str],
    received_amount: Decimal,
    received_at: datetime,
    now: datetime,
    tolerance: Decimal,
    window: timedelta,
) -> MatchResult:
    """
    Decide whether a raw payment settles a payment request.

    Order:
    1. Staleness (older than window → reject, never retried)
    2. Number and amount checks (either failing → reject)

    Returns:
        MatchResult with the first failing reason and audit details
    """
    if is_stale(received_at, now, window):
        return MatchResult(
            matched=False,
            reason=MatchReason.STALE_PAYMENT,
            details={"received_at": received_at.isoformat(), "window_hours": window.total_seconds() / 3600},
        )

    number_ok = numbers_match(claimed_number, received_number)
    amount_ok = amounts_match(claimed_amount, received_amount, tolerance)
    details = {
        "number_match": number_ok,
        "amount_match": amount_ok,
        "request_number": claimed_number,
        "payment_number": received_number,
        "request_amount": str(claimed_amount),
        "payment_amount": str(received_amount),
    }

    if not number_ok:
        return MatchResult(matched=False, reason=MatchReason.NUMBER_MISMATCH, details=details)
    if not amount_ok:
        return MatchResult(matched=False, reason=MatchReason.AMOUNT_MISMATCH, details=details)
    return MatchResult(matched=True, reason=MatchReason.MATCHED, details=details)
