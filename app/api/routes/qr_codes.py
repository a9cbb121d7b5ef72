from fastapi import APIRouter, Depends, Query

from app.api.deps import get_qr_code_service
from app.core.permissions import Principal, require_merchant
from app.domain.schemas import QRCodeCreate, QRCodeListResponse, QRCodeRecord, QRCodeResponse
from app.services.qr_codes import QRCodeService

router = APIRouter()


@router.post("", response_model=QRCodeResponse)
def create_qr_code(
    data: QRCodeCreate,
    merchant: Principal = Depends(require_merchant),
    service: QRCodeService = Depends(get_qr_code_service),
):
    """Generate a stamp QR code for one of the merchant's cards."""
    result = service.issue(
        merchant_id=merchant.id,
        card_id=data.card_id,
        expires_in_hours=data.expires_in_hours,
        is_single_use=data.is_single_use,
        security_level=data.security_level,
    )
    return QRCodeResponse(
        qr_code=QRCodeRecord(**result["qr_code"]),
        qr_value=result["qr_value"],
        qr_image=result["qr_image"],
    )


@router.get("/card/{card_id}", response_model=QRCodeListResponse)
def list_active_qr_codes(
    card_id: str,
    merchant: Principal = Depends(require_merchant),
    service: QRCodeService = Depends(get_qr_code_service),
):
    """List unexpired, unconsumed QR codes for a card."""
    rows = service.list_active(merchant.id, card_id)
    return QRCodeListResponse(qr_codes=[QRCodeRecord(**r) for r in rows])


@router.post("/{qr_code_id}/refresh", response_model=QRCodeResponse)
def refresh_qr_code(
    qr_code_id: str,
    security_level: str = Query("M", alias="securityLevel"),
    merchant: Principal = Depends(require_merchant),
    service: QRCodeService = Depends(get_qr_code_service),
):
    """Re-issue the display payload of an active code with a current timestamp."""
    result = service.refresh(merchant.id, qr_code_id, security_level=security_level)
    return QRCodeResponse(
        qr_code=QRCodeRecord(**result["qr_code"]),
        qr_value=result["qr_value"],
        qr_image=result["qr_image"],
    )


@router.delete("/{qr_code_id}")
def delete_qr_code(
    qr_code_id: str,
    merchant: Principal = Depends(require_merchant),
    service: QRCodeService = Depends(get_qr_code_service),
):
    service.delete(merchant.id, qr_code_id)
    return {"success": True}
