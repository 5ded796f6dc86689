import re
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .logging import setup_logging
from .models import (
    AnalyticsRepairResponse,
    Balance,
    CreateReferralRequest,
    EarningResponse,
    MilestoneResponse,
    MilestoneType,
    RecordEarningRequest,
    Referral,
    ReferralAnalytics,
    SettleWithdrawalRequest,
    TenantReferralStats,
    UpdateEarningRequest,
    WithdrawalRequest,
    WithdrawalResponse,
)
from .service import LedgerServiceError, ReferralLedgerService

TENANT_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")

setup_logging()

app = FastAPI(
    title="Referral Commission Ledger API",
    description="Tenant-scoped referral earnings, withdrawals, milestones and analytics",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = ReferralLedgerService()


def get_service() -> ReferralLedgerService:
    return ledger_service


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    if not x_tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Tenant identifier is required")
    if not TENANT_PATTERN.match(x_tenant_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid tenant identifier format")
    return x_tenant_id


def _http_error(e: LedgerServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.app_name}


@app.post("/referrals", response_model=Referral, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def create_referral(
    request: CreateReferralRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> Referral:
    try:
        return service.create_referral(tenant_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/referrals/active", response_model=list[Referral], tags=["Reporting"])
def list_active_referrals(
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> list[Referral]:
    return service.find_active_referrals(tenant_id)


@app.post("/referrals/expire", response_model=list[UUID], tags=["Referrals"])
def expire_referrals(
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> list[UUID]:
    try:
        return service.expire_inactive(tenant_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/referrals/{referral_id}", response_model=Referral, tags=["Referrals"])
def get_referral(
    referral_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> Referral:
    try:
        return service.get_referral(tenant_id, referral_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/referrals/{referral_id}/balance", response_model=Balance, tags=["Referrals"])
def get_balance(
    referral_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> Balance:
    try:
        return service.get_balance(tenant_id, referral_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/cancel", response_model=Referral, tags=["Referrals"])
def cancel_referral(
    referral_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> Referral:
    try:
        return service.cancel_referral(tenant_id, referral_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/referrals/{referral_id}/earnings",
    response_model=EarningResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Earnings"],
)
def record_earning(
    referral_id: UUID,
    request: RecordEarningRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> EarningResponse:
    try:
        return service.record_earning(tenant_id, referral_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.patch("/referrals/{referral_id}/earnings/{earning_id}", response_model=EarningResponse, tags=["Earnings"])
def update_earning(
    referral_id: UUID,
    earning_id: UUID,
    request: UpdateEarningRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> EarningResponse:
    try:
        return service.update_earning_status(tenant_id, referral_id, earning_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/referrals/{referral_id}/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Withdrawals"],
)
def request_withdrawal(
    referral_id: UUID,
    request: WithdrawalRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> WithdrawalResponse:
    try:
        return service.request_withdrawal(tenant_id, referral_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.patch(
    "/referrals/{referral_id}/withdrawals/{withdrawal_id}",
    response_model=WithdrawalResponse,
    tags=["Withdrawals"],
)
def settle_withdrawal(
    referral_id: UUID,
    withdrawal_id: UUID,
    request: SettleWithdrawalRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> WithdrawalResponse:
    try:
        return service.settle_withdrawal(tenant_id, referral_id, withdrawal_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/referrals/{referral_id}/milestones/{milestone_type}",
    response_model=MilestoneResponse,
    tags=["Milestones"],
)
def achieve_milestone(
    referral_id: UUID,
    milestone_type: MilestoneType,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> MilestoneResponse:
    try:
        return service.achieve_milestone(tenant_id, referral_id, milestone_type)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/clicks", response_model=ReferralAnalytics, tags=["Tracking"])
def track_click(
    referral_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> ReferralAnalytics:
    try:
        return service.track_click(tenant_id, referral_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/signups", response_model=ReferralAnalytics, tags=["Tracking"])
def track_signup(
    referral_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> ReferralAnalytics:
    try:
        return service.track_signup(tenant_id, referral_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/repair", response_model=AnalyticsRepairResponse, tags=["Reporting"])
def repair_analytics(
    referral_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> AnalyticsRepairResponse:
    try:
        return service.repair_analytics(tenant_id, referral_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/withdrawals/pending", response_model=list[Referral], tags=["Reporting"])
def list_pending_withdrawals(
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> list[Referral]:
    return service.find_pending_withdrawals(tenant_id)


@app.get("/stats", response_model=TenantReferralStats, tags=["Reporting"])
def get_tenant_stats(
    tenant_id: str = Depends(get_tenant_id),
    service: ReferralLedgerService = Depends(get_service),
) -> TenantReferralStats:
    return service.tenant_stats(tenant_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
