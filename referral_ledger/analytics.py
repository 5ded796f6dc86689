"""
Analytics fold over a referral's earning and withdrawal records.

The cached ``Referral.analytics`` is only an optimization; these functions are
the source of truth for totals and are what the service writes back after
every mutation.
"""

from decimal import Decimal
from typing import Iterable, NamedTuple

from .models import (
    Earning,
    EarningStatus,
    Referral,
    ReferralAnalytics,
    RESERVING_WITHDRAWAL_STATUSES,
    Withdrawal,
    WithdrawalStatus,
)

ZERO = Decimal("0")


class AnalyticsTotals(NamedTuple):
    total_earnings: Decimal
    pending_payments: Decimal
    conversion_rate: float


def conversion_rate(click_count: int, signup_count: int) -> float:
    """Signups per click as a percentage, 0 when there are no clicks."""
    if click_count <= 0:
        return 0.0
    return signup_count * 100 / click_count


def reserved_or_settled(withdrawals: Iterable[Withdrawal]) -> Decimal:
    return sum(
        (w.amount for w in withdrawals if w.status in RESERVING_WITHDRAWAL_STATUSES),
        ZERO,
    )


def compute_analytics(
    earnings: Iterable[Earning],
    withdrawals: Iterable[Withdrawal],
    click_count: int,
    signup_count: int,
) -> AnalyticsTotals:
    """
    Fold earnings and withdrawals into lifetime totals.

    ``total_earnings`` counts every earning regardless of status. Pending
    payments are the pending earnings less whatever completed withdrawals have
    already paid out, never below zero.
    """
    earnings = list(earnings)
    withdrawals = list(withdrawals)

    total = sum((e.amount for e in earnings), ZERO)
    pending = sum((e.amount for e in earnings if e.status == EarningStatus.PENDING), ZERO)
    paid_out = sum(
        (w.amount for w in withdrawals if w.status == WithdrawalStatus.COMPLETED),
        ZERO,
    )

    return AnalyticsTotals(
        total_earnings=total,
        pending_payments=max(ZERO, pending - paid_out),
        conversion_rate=conversion_rate(click_count, signup_count),
    )


def analytics_for(referral: Referral) -> ReferralAnalytics:
    totals = compute_analytics(
        referral.earnings,
        referral.withdrawals,
        referral.analytics.click_count,
        referral.analytics.signup_count,
    )
    return ReferralAnalytics(
        click_count=referral.analytics.click_count,
        signup_count=referral.analytics.signup_count,
        conversion_rate=totals.conversion_rate,
        total_earnings=totals.total_earnings,
        pending_payments=totals.pending_payments,
    )


def available_balance(referral: Referral) -> Decimal:
    """Lifetime earnings minus funds reserved or already paid out."""
    total = sum((e.amount for e in referral.earnings), ZERO)
    return total - reserved_or_settled(referral.withdrawals)


def has_drifted(referral: Referral) -> bool:
    expected = analytics_for(referral)
    cached = referral.analytics
    return (
        cached.total_earnings != expected.total_earnings
        or cached.pending_payments != expected.pending_payments
        or cached.conversion_rate != expected.conversion_rate
    )
