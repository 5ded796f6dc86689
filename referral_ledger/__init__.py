"""
Referral Commission Ledger

This package provides:
- Tenant-scoped referral records with append-only earnings and withdrawals
- Withdrawal requests checked against the available balance
- Withdrawal lifecycle: pending → processing → completed / failed
- One-time milestones with explicitly paid bonuses
- Analytics recomputed from the underlying records
- Per-referral locking around every mutation
"""

from .models import (
    EarningStatus,
    MilestoneType,
    Referral,
    ReferralStatus,
    WithdrawalStatus,
)
from .service import ReferralLedgerService

__all__ = [
    "EarningStatus",
    "MilestoneType",
    "Referral",
    "ReferralStatus",
    "WithdrawalStatus",
    "ReferralLedgerService",
]
