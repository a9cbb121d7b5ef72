from fastapi import APIRouter, Depends

from app.api.deps import get_claim_service, get_client_meta, get_redemption_service
from app.core.permissions import Principal, require_customer, require_merchant
from app.domain.schemas import (
    ClaimRequest,
    ClaimResponse,
    CustomerInfo,
    CustomerStampCard,
    RedeemRequest,
    RedeemResponse,
    TransactionRecord,
)
from app.services.rewards import RewardClaimService, RewardRedemptionService

router = APIRouter()


@router.post("/redeem", response_model=RedeemResponse)
def redeem_reward(
    data: RedeemRequest,
    merchant: Principal = Depends(require_merchant),
    client_meta: dict = Depends(get_client_meta),
    service: RewardRedemptionService = Depends(get_redemption_service),
):
    """Confirm a reward code presented in person by a customer."""
    result = service.redeem(data.reward_code, merchant.id, client_meta=client_meta)
    return RedeemResponse(
        transaction=TransactionRecord(**result.transaction),
        reward=result.reward,
        customer_info=CustomerInfo(id=result.customer_id),
    )


@router.post("/claim", response_model=ClaimResponse)
def claim_reward(
    data: ClaimRequest,
    customer: Principal = Depends(require_customer),
    service: RewardClaimService = Depends(get_claim_service),
):
    """Exchange a completed card for a reward code and start the card over."""
    result = service.claim(customer.id, data.card_id)
    return ClaimResponse(
        reward_code=result.reward_code,
        reward=result.reward,
        stamp_card=CustomerStampCard(**result.stamp_card),
        transaction=TransactionRecord(**result.transaction) if result.transaction else None,
    )
