from fastapi import APIRouter, Depends

from app.api.deps import get_pending_customer_service
from app.core.permissions import Principal, require_customer
from app.domain.schemas import MergePendingResponse
from app.services.customers import PendingCustomerService

router = APIRouter()


@router.post("/merge-pending", response_model=MergePendingResponse)
def merge_pending_customer(
    customer: Principal = Depends(require_customer),
    service: PendingCustomerService = Depends(get_pending_customer_service),
):
    """Attach stamps collected under the caller's email before they signed up."""
    result = service.merge(customer.email, customer.id)
    return MergePendingResponse(
        merged=result.merged,
        cards_moved=result.cards_moved,
        cards_combined=result.cards_combined,
    )
