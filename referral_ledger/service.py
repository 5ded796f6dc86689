import re
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

import structlog

from .analytics import analytics_for, available_balance, has_drifted, reserved_or_settled
from .config import Settings, get_settings
from .locks import LockTimeout, ReferralLocks
from .models import (
    AnalyticsRepairResponse,
    Balance,
    Commission,
    CreateReferralRequest,
    Earning,
    EarningResponse,
    EarningStatus,
    EARNING_TRANSITIONS,
    Milestone,
    MilestoneBonus,
    MilestoneResponse,
    MilestoneType,
    RecordEarningRequest,
    Referral,
    ReferralAnalytics,
    ReferralStatus,
    SettleWithdrawalRequest,
    TenantReferralStats,
    Tracking,
    UpdateEarningRequest,
    Withdrawal,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)

logger = structlog.get_logger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


class LedgerServiceError(Exception):
    status_code = 400


class LedgerValidationError(LedgerServiceError):
    status_code = 400


class InvalidAmountError(LedgerValidationError):
    pass


class InvalidCurrencyError(LedgerValidationError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    status_code = 400


class NotFoundError(LedgerServiceError):
    status_code = 404


class ReferralNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class EarningNotFoundError(NotFoundError):
    pass


class InvalidTransitionError(LedgerServiceError):
    status_code = 409


class IdempotencyConflictError(LedgerServiceError):
    status_code = 409


class DuplicateReferralError(LedgerServiceError):
    status_code = 409


class LedgerBusyError(LedgerServiceError):
    status_code = 503


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    def __init__(self):
        self.referrals: dict[tuple[str, UUID], Referral] = {}
        self.pair_index: dict[tuple[str, UUID, UUID], UUID] = {}

    def get(self, tenant_id: str, referral_id: UUID) -> Optional[Referral]:
        return self.referrals.get((tenant_id, referral_id))

    def put(self, referral: Referral) -> None:
        self.referrals[(referral.tenant_id, referral.id)] = referral
        self.pair_index[(referral.tenant_id, referral.referrer_id, referral.referred_id)] = referral.id

    def for_tenant(self, tenant_id: str) -> list[Referral]:
        return [r for (tenant, _), r in list(self.referrals.items()) if tenant == tenant_id]


class ReferralLedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        config: Optional[Settings] = None,
        locks: Optional[ReferralLocks] = None,
    ):
        self.config = config or get_settings()
        self.storage = storage or InMemoryStorage()
        self.locks = locks or ReferralLocks(timeout=self.config.lock_timeout_seconds)
        self._create_lock = threading.Lock()

    @contextmanager
    def _transaction(self, tenant_id: str, referral_id: UUID) -> Iterator[Referral]:
        """
        Lock one referral and yield a working copy of it.

        The copy replaces the stored referral only when the block exits
        cleanly, after analytics have been refolded from its records. A block
        that leaves the referral unchanged writes nothing.
        """
        try:
            with self.locks.hold((tenant_id, referral_id)):
                stored = self.storage.get(tenant_id, referral_id)
                if stored is None:
                    raise ReferralNotFoundError(f"Referral {referral_id} not found")
                referral = stored.model_copy(deep=True)
                yield referral
                referral.analytics = analytics_for(referral)
                referral.commission.accrued_amount = referral.analytics.total_earnings
                if referral != stored:
                    referral.updated_at = _now()
                    self.storage.put(referral)
        except LockTimeout as e:
            raise LedgerBusyError(f"Referral {referral_id} is busy, retry later") from e

    def create_referral(self, tenant_id: str, request: CreateReferralRequest) -> Referral:
        if not Decimal("0") <= request.commission_percentage <= Decimal("100"):
            raise LedgerValidationError(
                f"Commission percentage must be between 0 and 100, got {request.commission_percentage}"
            )
        currency = self._normalize_currency(request.currency or self.config.default_currency)
        now = _now()

        referral = Referral(
            tenant_id=tenant_id,
            referrer_id=request.referrer_id,
            referred_id=request.referred_id,
            referral_code=request.referral_code,
            type=request.type,
            commission=Commission(percentage=request.commission_percentage, currency=currency),
            milestones=[
                Milestone(
                    type=milestone_type,
                    bonus=MilestoneBonus(
                        amount=self.config.milestone_bonuses.get(milestone_type.value, Decimal("0")),
                        currency=currency,
                    ),
                )
                for milestone_type in MilestoneType
            ],
            tracking=Tracking(signup_date=now, last_activity_date=now),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=self.config.referral_inactivity_days),
        )

        with self._create_lock:
            pair = (tenant_id, request.referrer_id, request.referred_id)
            if pair in self.storage.pair_index:
                raise DuplicateReferralError(
                    f"Referral between {request.referrer_id} and {request.referred_id} already exists"
                )
            self.storage.put(referral)

        logger.info(
            "Referral created",
            tenant_id=tenant_id,
            referral_id=str(referral.id),
            referral_code=referral.referral_code,
        )
        return referral.model_copy(deep=True)

    def get_referral(self, tenant_id: str, referral_id: UUID) -> Referral:
        referral = self.storage.get(tenant_id, referral_id)
        if referral is None:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        return referral.model_copy(deep=True)

    def get_balance(self, tenant_id: str, referral_id: UUID) -> Balance:
        return self._balance(self.get_referral(tenant_id, referral_id))

    def record_earning(
        self, tenant_id: str, referral_id: UUID, request: RecordEarningRequest
    ) -> EarningResponse:
        if request.amount <= 0:
            raise InvalidAmountError(f"Earning amount must be positive, got {request.amount}")
        if request.status == EarningStatus.REJECTED:
            raise LedgerValidationError("An earning cannot be recorded as rejected")

        with self._transaction(tenant_id, referral_id) as referral:
            currency = self._check_currency(referral, request.currency)

            existing = self._find_by_idempotency(referral, request.idempotency_key)
            if existing:
                if existing.amount != request.amount or existing.currency != currency:
                    raise IdempotencyConflictError(
                        f"Idempotency key {request.idempotency_key} was already used for a different earning"
                    )
                return EarningResponse(
                    earning=existing.model_copy(),
                    analytics=referral.analytics.model_copy(),
                    message="Earning already recorded (idempotent return)",
                )

            if referral.is_closed():
                raise InvalidTransitionError(f"Referral {referral_id} is {referral.status.value}")

            description = request.description
            if request.milestone:
                milestone = referral.get_milestone(request.milestone)
                if milestone is None or not milestone.achieved:
                    raise InvalidTransitionError(
                        f"Milestone {request.milestone.value} has not been achieved"
                    )
                if milestone.bonus.paid:
                    raise InvalidTransitionError(
                        f"Bonus for milestone {request.milestone.value} was already paid"
                    )
                if request.amount != milestone.bonus.amount or currency != milestone.bonus.currency:
                    raise LedgerValidationError(
                        f"Bonus for milestone {request.milestone.value} is "
                        f"{milestone.bonus.amount} {milestone.bonus.currency}, "
                        f"got {request.amount} {currency}"
                    )
                milestone.bonus.paid = True
                description = description or f"{request.milestone.value} milestone bonus"

            now = _now()
            earning = Earning(
                amount=request.amount,
                currency=currency,
                description=description,
                source_kind=request.source_kind,
                occurred_at=now,
                status=request.status,
                idempotency_key=request.idempotency_key,
                milestone=request.milestone,
            )
            referral.earnings.append(earning)
            self._touch(referral, now)
            if earning.status in (EarningStatus.APPROVED, EarningStatus.PAID):
                self._qualify(referral, now)

        logger.info(
            "Earning recorded",
            tenant_id=tenant_id,
            referral_id=str(referral_id),
            earning_id=str(earning.id),
            amount=str(earning.amount),
            currency=earning.currency,
            status=earning.status.value,
        )
        return EarningResponse(
            earning=earning.model_copy(),
            analytics=referral.analytics.model_copy(),
            message="Earning recorded successfully",
        )

    def update_earning_status(
        self, tenant_id: str, referral_id: UUID, earning_id: UUID, request: UpdateEarningRequest
    ) -> EarningResponse:
        with self._transaction(tenant_id, referral_id) as referral:
            earning = referral.get_earning(earning_id)
            if earning is None:
                raise EarningNotFoundError(f"Earning {earning_id} not found")
            if request.status not in EARNING_TRANSITIONS[earning.status]:
                raise InvalidTransitionError(
                    f"Cannot move earning from {earning.status.value} to {request.status.value}"
                )
            earning.status = request.status
            if request.status in (EarningStatus.APPROVED, EarningStatus.PAID):
                self._qualify(referral, _now())

        logger.info(
            "Earning status updated",
            tenant_id=tenant_id,
            referral_id=str(referral_id),
            earning_id=str(earning_id),
            status=request.status.value,
        )
        return EarningResponse(
            earning=earning.model_copy(),
            analytics=referral.analytics.model_copy(),
            message=f"Earning marked {request.status.value}",
        )

    def request_withdrawal(
        self, tenant_id: str, referral_id: UUID, request: WithdrawalRequest
    ) -> WithdrawalResponse:
        if request.amount <= 0:
            raise InvalidAmountError(f"Withdrawal amount must be positive, got {request.amount}")

        with self._transaction(tenant_id, referral_id) as referral:
            currency = self._check_currency(referral, request.currency)
            available = available_balance(referral)
            if request.amount > available:
                logger.info(
                    "Withdrawal rejected",
                    tenant_id=tenant_id,
                    referral_id=str(referral_id),
                    requested=str(request.amount),
                    available=str(available),
                )
                raise InsufficientBalanceError(
                    f"Insufficient balance for withdrawal: requested {request.amount}, available {available}"
                )

            withdrawal = Withdrawal(
                amount=request.amount,
                currency=currency,
                method=request.method,
                payment_details=request.payment_details,
                requested_at=_now(),
                notes=request.notes,
            )
            referral.withdrawals.append(withdrawal)

        logger.info(
            "Withdrawal requested",
            tenant_id=tenant_id,
            referral_id=str(referral_id),
            withdrawal_id=str(withdrawal.id),
            amount=str(withdrawal.amount),
            method=withdrawal.method.value,
        )
        return WithdrawalResponse(
            withdrawal=withdrawal.model_copy(deep=True),
            balance=self._balance(referral),
            message="Withdrawal requested successfully",
        )

    def settle_withdrawal(
        self,
        tenant_id: str,
        referral_id: UUID,
        withdrawal_id: UUID,
        request: SettleWithdrawalRequest,
    ) -> WithdrawalResponse:
        with self._transaction(tenant_id, referral_id) as referral:
            withdrawal = referral.get_withdrawal(withdrawal_id)
            if withdrawal is None:
                raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
            if withdrawal.is_terminal():
                raise InvalidTransitionError(
                    f"Withdrawal {withdrawal_id} is already {withdrawal.status.value}"
                )
            if not withdrawal.can_transition(request.status):
                raise InvalidTransitionError(
                    f"Cannot move withdrawal from {withdrawal.status.value} to {request.status.value}"
                )

            now = _now()
            withdrawal.status = request.status
            withdrawal.processed_at = now
            if request.transaction_id:
                withdrawal.transaction_id = request.transaction_id
            if request.notes:
                withdrawal.notes = request.notes

            if request.status == WithdrawalStatus.COMPLETED:
                if analytics_for(referral).pending_payments == 0:
                    referral.commission.paid = True
                    referral.commission.paid_at = now

        logger.info(
            "Withdrawal status updated",
            tenant_id=tenant_id,
            referral_id=str(referral_id),
            withdrawal_id=str(withdrawal_id),
            status=request.status.value,
            transaction_id=request.transaction_id,
        )
        return WithdrawalResponse(
            withdrawal=withdrawal.model_copy(deep=True),
            balance=self._balance(referral),
            message=f"Withdrawal marked {request.status.value}",
        )

    def achieve_milestone(
        self, tenant_id: str, referral_id: UUID, milestone_type: MilestoneType
    ) -> MilestoneResponse:
        with self._transaction(tenant_id, referral_id) as referral:
            milestone = referral.get_milestone(milestone_type)
            if milestone is None:
                raise NotFoundError(f"Milestone {milestone_type.value} not found")
            changed = not milestone.achieved
            if changed:
                milestone.achieved = True
                milestone.achieved_at = _now()

        if changed:
            logger.info(
                "Milestone achieved",
                tenant_id=tenant_id,
                referral_id=str(referral_id),
                milestone=milestone_type.value,
            )
        return MilestoneResponse(milestone=milestone.model_copy(deep=True), changed=changed)

    def track_click(self, tenant_id: str, referral_id: UUID) -> ReferralAnalytics:
        with self._transaction(tenant_id, referral_id) as referral:
            if referral.is_closed():
                raise InvalidTransitionError(f"Referral {referral_id} is {referral.status.value}")
            now = _now()
            referral.analytics.click_count += 1
            if referral.tracking.first_click_date is None:
                referral.tracking.first_click_date = now
            self._touch(referral, now)
        return referral.analytics.model_copy()

    def track_signup(self, tenant_id: str, referral_id: UUID) -> ReferralAnalytics:
        with self._transaction(tenant_id, referral_id) as referral:
            if referral.is_closed():
                raise InvalidTransitionError(f"Referral {referral_id} is {referral.status.value}")
            now = _now()
            referral.analytics.signup_count += 1
            if referral.tracking.signup_date is None:
                referral.tracking.signup_date = now
            self._touch(referral, now)
        return referral.analytics.model_copy()

    def cancel_referral(self, tenant_id: str, referral_id: UUID) -> Referral:
        with self._transaction(tenant_id, referral_id) as referral:
            if referral.status == ReferralStatus.CANCELLED:
                raise InvalidTransitionError(f"Referral {referral_id} is already cancelled")
            referral.status = ReferralStatus.CANCELLED

        logger.info("Referral cancelled", tenant_id=tenant_id, referral_id=str(referral_id))
        return referral.model_copy(deep=True)

    def expire_inactive(self, tenant_id: str, now: Optional[datetime] = None) -> list[UUID]:
        now = now or _now()
        cutoff = now - timedelta(days=self.config.referral_inactivity_days)
        expired = []

        for candidate in self.storage.for_tenant(tenant_id):
            if candidate.status != ReferralStatus.PENDING:
                continue
            with self._transaction(tenant_id, candidate.id) as referral:
                last_seen = referral.tracking.last_activity_date or referral.created_at
                if referral.status == ReferralStatus.PENDING and last_seen < cutoff:
                    referral.status = ReferralStatus.EXPIRED
                    expired.append(referral.id)

        if expired:
            logger.info("Referrals expired", tenant_id=tenant_id, count=len(expired))
        return expired

    def repair_analytics(self, tenant_id: str, referral_id: UUID) -> AnalyticsRepairResponse:
        with self._transaction(tenant_id, referral_id) as referral:
            drifted = has_drifted(referral)
            if drifted:
                logger.warning(
                    "Analytics drift detected",
                    tenant_id=tenant_id,
                    referral_id=str(referral_id),
                    cached_total=str(referral.analytics.total_earnings),
                    cached_pending=str(referral.analytics.pending_payments),
                )
        return AnalyticsRepairResponse(
            referral_id=referral_id,
            drifted=drifted,
            analytics=referral.analytics.model_copy(),
        )

    def find_active_referrals(self, tenant_id: str) -> list[Referral]:
        active = [
            r for r in self.storage.for_tenant(tenant_id)
            if r.status == ReferralStatus.COMPLETED and r.analytics.total_earnings > 0
        ]
        active.sort(key=lambda r: r.analytics.total_earnings, reverse=True)
        return [r.model_copy(deep=True) for r in active]

    def find_pending_withdrawals(self, tenant_id: str) -> list[Referral]:
        return [
            r.model_copy(deep=True) for r in self.storage.for_tenant(tenant_id)
            if any(w.status == WithdrawalStatus.PENDING for w in r.withdrawals)
        ]

    def tenant_stats(self, tenant_id: str) -> TenantReferralStats:
        referrals = self.storage.for_tenant(tenant_id)
        return TenantReferralStats(
            tenant_id=tenant_id,
            total_referrals=len(referrals),
            total_earnings=sum((r.analytics.total_earnings for r in referrals), Decimal("0")),
            pending_payments=sum((r.analytics.pending_payments for r in referrals), Decimal("0")),
        )

    def _balance(self, referral: Referral) -> Balance:
        totals = analytics_for(referral)
        return Balance(
            referral_id=referral.id,
            currency=referral.commission.currency,
            total_earnings=totals.total_earnings,
            reserved_or_settled=reserved_or_settled(referral.withdrawals),
            available=available_balance(referral),
            pending_payments=totals.pending_payments,
        )

    def _touch(self, referral: Referral, now: datetime) -> None:
        referral.tracking.last_activity_date = now
        referral.expires_at = now + timedelta(days=self.config.referral_inactivity_days)

    def _qualify(self, referral: Referral, now: datetime) -> None:
        if referral.status == ReferralStatus.PENDING:
            referral.status = ReferralStatus.COMPLETED
        if referral.tracking.qualification_date is None:
            referral.tracking.qualification_date = now

    def _normalize_currency(self, currency: str) -> str:
        code = (currency or "").strip().upper()
        if not CURRENCY_PATTERN.match(code):
            raise InvalidCurrencyError(f"Invalid currency code: {currency!r}")
        return code

    def _check_currency(self, referral: Referral, currency: str) -> str:
        code = self._normalize_currency(currency)
        if code != referral.commission.currency:
            raise InvalidCurrencyError(
                f"Referral {referral.id} accrues in {referral.commission.currency}, got {code}"
            )
        return code

    def _find_by_idempotency(self, referral: Referral, key: Optional[str]) -> Optional[Earning]:
        if not key:
            return None
        for earning in referral.earnings:
            if earning.idempotency_key == key:
                return earning
        return None
