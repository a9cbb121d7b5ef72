from fastapi import APIRouter, Depends

from app.api.deps import get_client_meta, get_stamp_service
from app.core.permissions import Principal, get_current_principal
from app.domain.schemas import (
    CustomerInfo,
    CustomerStampCard,
    StampIssueRequest,
    StampIssueResponse,
    TransactionRecord,
)
from app.services.stamps import StampIssuanceService

router = APIRouter()


@router.post("/issue", response_model=StampIssueResponse)
def issue_stamps(
    data: StampIssueRequest,
    principal: Principal = Depends(get_current_principal),
    client_meta: dict = Depends(get_client_meta),
    service: StampIssuanceService = Depends(get_stamp_service),
):
    """Issue stamps directly (merchant) or by scanned QR code (merchant or customer)."""
    result = service.issue(data, principal, client_meta=client_meta)
    return StampIssueResponse(
        message=result.message,
        stamp_card=CustomerStampCard(**result.stamp_card),
        stamps_added=result.stamps_added,
        reward_earned=result.reward_earned,
        reward_code=result.reward_code,
        transaction=TransactionRecord(**result.transaction) if result.transaction else None,
        customer_info=CustomerInfo(id=result.customer.id, email=result.customer.email),
    )
