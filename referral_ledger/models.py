from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ReferralType(str, Enum):
    USER = "user"
    AGENCY = "agency"
    RESELLER = "reseller"


class SourceKind(str, Enum):
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    UPGRADE = "upgrade"


class EarningStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


class WithdrawalMethod(str, Enum):
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"
    STRIPE = "stripe"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MilestoneType(str, Enum):
    FIRST_PAYMENT = "first_payment"
    RECURRING_PAYMENT = "recurring_payment"
    UPGRADE = "upgrade"
    RETENTION = "retention"


# Withdrawals in these states hold funds against the available balance.
RESERVING_WITHDRAWAL_STATUSES = frozenset({
    WithdrawalStatus.PENDING,
    WithdrawalStatus.PROCESSING,
    WithdrawalStatus.COMPLETED,
})

WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.PROCESSING, WithdrawalStatus.FAILED}),
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED}),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
}

EARNING_TRANSITIONS: dict[EarningStatus, frozenset[EarningStatus]] = {
    EarningStatus.PENDING: frozenset({EarningStatus.APPROVED, EarningStatus.REJECTED}),
    EarningStatus.APPROVED: frozenset({EarningStatus.PAID, EarningStatus.REJECTED}),
    EarningStatus.PAID: frozenset(),
    EarningStatus.REJECTED: frozenset(),
}


class Commission(BaseModel):
    percentage: Decimal
    accrued_amount: Decimal = Decimal("0")
    currency: str = "USD"
    paid: bool = False
    paid_at: Optional[datetime] = None


class Earning(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    amount: Decimal
    currency: str
    description: Optional[str] = None
    source_kind: SourceKind
    occurred_at: datetime
    status: EarningStatus = EarningStatus.PENDING
    idempotency_key: Optional[str] = None
    milestone: Optional[MilestoneType] = None

    model_config = ConfigDict(from_attributes=True)


class BankAccount(BaseModel):
    name: Optional[str] = None
    number: Optional[str] = None
    bank: Optional[str] = None
    swift: Optional[str] = None


class PaymentDetails(BaseModel):
    paypal_email: Optional[str] = None
    bank_account: Optional[BankAccount] = None
    crypto_address: Optional[str] = None
    stripe_account: Optional[str] = None


class Withdrawal(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    amount: Decimal
    currency: str
    method: WithdrawalMethod
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    requested_at: datetime
    processed_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return not WITHDRAWAL_TRANSITIONS[self.status]

    def can_transition(self, new_status: WithdrawalStatus) -> bool:
        return new_status in WITHDRAWAL_TRANSITIONS[self.status]


class MilestoneBonus(BaseModel):
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    paid: bool = False


class Milestone(BaseModel):
    type: MilestoneType
    achieved: bool = False
    achieved_at: Optional[datetime] = None
    bonus: MilestoneBonus = Field(default_factory=MilestoneBonus)


class ReferralAnalytics(BaseModel):
    click_count: int = 0
    signup_count: int = 0
    conversion_rate: float = 0.0
    total_earnings: Decimal = Decimal("0")
    pending_payments: Decimal = Decimal("0")


class Tracking(BaseModel):
    first_click_date: Optional[datetime] = None
    signup_date: Optional[datetime] = None
    qualification_date: Optional[datetime] = None
    last_activity_date: Optional[datetime] = None


class Referral(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    referrer_id: UUID
    referred_id: UUID
    referral_code: str
    status: ReferralStatus = ReferralStatus.PENDING
    type: ReferralType
    commission: Commission
    earnings: list[Earning] = Field(default_factory=list)
    withdrawals: list[Withdrawal] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)
    analytics: ReferralAnalytics = Field(default_factory=ReferralAnalytics)
    tracking: Tracking = Field(default_factory=Tracking)
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_closed(self) -> bool:
        return self.status in (ReferralStatus.EXPIRED, ReferralStatus.CANCELLED)

    def get_milestone(self, milestone_type: MilestoneType) -> Optional[Milestone]:
        for milestone in self.milestones:
            if milestone.type == milestone_type:
                return milestone
        return None

    def get_withdrawal(self, withdrawal_id: UUID) -> Optional[Withdrawal]:
        for withdrawal in self.withdrawals:
            if withdrawal.id == withdrawal_id:
                return withdrawal
        return None

    def get_earning(self, earning_id: UUID) -> Optional[Earning]:
        for earning in self.earnings:
            if earning.id == earning_id:
                return earning
        return None


# Requests

class CreateReferralRequest(BaseModel):
    referrer_id: UUID
    referred_id: UUID
    referral_code: str = Field(..., min_length=1)
    type: ReferralType = ReferralType.USER
    commission_percentage: Decimal
    currency: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referrer_id": "550e8400-e29b-41d4-a716-446655440000",
            "referred_id": "660e8400-e29b-41d4-a716-446655440001",
            "referral_code": "JOHN-2024",
            "type": "user",
            "commission_percentage": 20,
            "currency": "USD",
        }
    })


class RecordEarningRequest(BaseModel):
    amount: Decimal
    currency: str
    source_kind: SourceKind
    status: EarningStatus = EarningStatus.PENDING
    description: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, description="Billing event id; replays do not accrue twice")
    milestone: Optional[MilestoneType] = Field(None, description="Milestone whose bonus this earning pays out")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 49.90,
            "currency": "USD",
            "source_kind": "subscription",
            "idempotency_key": "invoice-2024-0001",
        }
    })


class UpdateEarningRequest(BaseModel):
    status: EarningStatus


class WithdrawalRequest(BaseModel):
    amount: Decimal
    currency: str
    method: WithdrawalMethod
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    notes: Optional[str] = None


class SettleWithdrawalRequest(BaseModel):
    status: WithdrawalStatus
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


# Responses

class Balance(BaseModel):
    referral_id: UUID
    currency: str
    total_earnings: Decimal
    reserved_or_settled: Decimal
    available: Decimal
    pending_payments: Decimal


class EarningResponse(BaseModel):
    earning: Earning
    analytics: ReferralAnalytics
    message: str


class WithdrawalResponse(BaseModel):
    withdrawal: Withdrawal
    balance: Balance
    message: str


class MilestoneResponse(BaseModel):
    milestone: Milestone
    changed: bool


class AnalyticsRepairResponse(BaseModel):
    referral_id: UUID
    drifted: bool
    analytics: ReferralAnalytics


class TenantReferralStats(BaseModel):
    tenant_id: str
    total_referrals: int
    total_earnings: Decimal
    pending_payments: Decimal
