"""
Cancellation and modification rules.

Pure functions over a booking's stored policy documents and an explicit "now";
no database or network access. Money math uses Decimal with half-up rounding
to cents.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ..schemas.booking import CancellationPolicy, ModificationPolicy
from ..utils.clock import to_naive_utc

CENTS = Decimal("0.01")
FULL_FEE = Decimal("100")


@dataclass
class CancellationDecision:
    allowed: bool
    fee_percentage: Decimal
    reason: Optional[str] = None


@dataclass
class ModificationDecision:
    allowed: bool
    reason: Optional[str] = None


def days_until_start(start_date: datetime, now: datetime) -> int:
    """Whole days until start, rounded up (a partial day counts as a day)."""
    delta = to_naive_utc(start_date) - to_naive_utc(now)
    return math.ceil(delta / timedelta(days=1))


def check_cancellation(booking, now: datetime) -> CancellationDecision:
    if not booking.cancellation_policy:
        return CancellationDecision(True, Decimal("0"), "No cancellation policy")

    policy = CancellationPolicy.model_validate(booking.cancellation_policy)
    if policy.non_refundable:
        return CancellationDecision(False, FULL_FEE, "This booking is non-refundable")

    now = to_naive_utc(now)
    if policy.free_cancellation_until and now <= to_naive_utc(policy.free_cancellation_until):
        return CancellationDecision(True, Decimal("0"), "Within free cancellation period")

    days = days_until_start(booking.start_date, now)
    tiers = sorted(policy.cancellation_fees, key=lambda tier: tier.days_before_start, reverse=True)
    for tier in tiers:
        if days >= tier.days_before_start:
            # A 0% tier is a real tier, not "no fee configured"
            return CancellationDecision(
                True,
                tier.fee_percentage,
                f"{tier.fee_percentage}% fee applies {tier.days_before_start}+ days before start"
            )

    return CancellationDecision(True, FULL_FEE, "No cancellation fee tier applies")


def check_modification(booking, now: datetime) -> ModificationDecision:
    if not booking.modification_policy:
        return ModificationDecision(False, "Modifications not allowed for this booking")

    policy = ModificationPolicy.model_validate(booking.modification_policy)
    if not policy.allow_modifications:
        return ModificationDecision(False, "Modifications not allowed for this booking")

    if policy.modification_deadline and to_naive_utc(now) > to_naive_utc(policy.modification_deadline):
        return ModificationDecision(False, "Modification deadline has passed")

    return ModificationDecision(True)


def calculate_refund_amount(total_amount, fee_percentage) -> Decimal:
    """total x (100 - fee) / 100, rounded half-up to cents, never negative."""
    total = Decimal(str(total_amount))
    fee = min(max(Decimal(str(fee_percentage)), Decimal("0")), FULL_FEE)
    refund = total * (FULL_FEE - fee) / FULL_FEE
    return refund.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Convert a decimal amount to integer cents for the gateway."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(CENTS)
