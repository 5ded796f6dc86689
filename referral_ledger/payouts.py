"""
Payout dispatch.

The ledger never talks to a payment rail while holding a referral lock: the
withdrawal is first marked ``processing``, the processor is called with no
lock held, and its result is recorded by a separate settle call. A declined
payout is recorded as a ``failed`` withdrawal, not raised.
"""

from typing import Optional, Protocol
from uuid import UUID

import structlog
from pydantic import BaseModel

from .models import (
    Referral,
    SettleWithdrawalRequest,
    Withdrawal,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .service import InvalidTransitionError, ReferralLedgerService

logger = structlog.get_logger(__name__)


class PayoutResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    message: Optional[str] = None


class PayoutProcessor(Protocol):
    def send(self, withdrawal: Withdrawal, referral: Referral) -> PayoutResult:
        ...


def dispatch_withdrawal(
    service: ReferralLedgerService,
    processor: PayoutProcessor,
    tenant_id: str,
    referral_id: UUID,
    withdrawal_id: UUID,
) -> WithdrawalResponse:
    """
    Send one pending withdrawal to the payout processor and record the outcome.

    If the processor raises, the exception propagates and the withdrawal stays
    ``processing`` until someone settles it explicitly.
    """
    referral = service.get_referral(tenant_id, referral_id)
    withdrawal = referral.get_withdrawal(withdrawal_id)
    if withdrawal is not None and withdrawal.status != WithdrawalStatus.PENDING:
        raise InvalidTransitionError(
            f"Only pending withdrawals can be dispatched, {withdrawal_id} is {withdrawal.status.value}"
        )

    processing = service.settle_withdrawal(
        tenant_id, referral_id, withdrawal_id,
        SettleWithdrawalRequest(status=WithdrawalStatus.PROCESSING),
    )

    result = processor.send(processing.withdrawal, referral)

    if result.success:
        settle = SettleWithdrawalRequest(
            status=WithdrawalStatus.COMPLETED,
            transaction_id=result.transaction_id,
            notes=result.message,
        )
    else:
        logger.warning(
            "Payout failed",
            tenant_id=tenant_id,
            referral_id=str(referral_id),
            withdrawal_id=str(withdrawal_id),
            reason=result.message,
        )
        settle = SettleWithdrawalRequest(
            status=WithdrawalStatus.FAILED,
            transaction_id=result.transaction_id,
            notes=result.message or "Payout declined",
        )
    return service.settle_withdrawal(tenant_id, referral_id, withdrawal_id, settle)
