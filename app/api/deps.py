from fastapi import Request

from app.services.customers import PendingCustomerService, create_pending_customer_service
from app.services.qr_codes import QRCodeService, create_qr_code_service
from app.services.rewards import (
    RewardClaimService,
    RewardRedemptionService,
    create_claim_service,
    create_redemption_service,
)
from app.services.stamps import StampIssuanceService, create_stamp_service


def get_client_meta(request: Request) -> dict:
    """Caller IP and user agent recorded in ledger metadata."""
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {"ip": ip, "user_agent": request.headers.get("user-agent")}


def get_qr_code_service() -> QRCodeService:
    return create_qr_code_service()


def get_stamp_service() -> StampIssuanceService:
    return create_stamp_service()


def get_redemption_service() -> RewardRedemptionService:
    return create_redemption_service()


def get_claim_service() -> RewardClaimService:
    return create_claim_service()


def get_pending_customer_service() -> PendingCustomerService:
    return create_pending_customer_service()
