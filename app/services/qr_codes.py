"""
QR Code Issuer.

Mints time-boxed, optionally single-use stamp QR codes for a merchant's
card. The serialized payload carries a timestamp that bounds the replay
window at scan time; the code's own lifetime is `expires_at`.
"""

import logging
import secrets
from datetime import datetime, timedelta

from app.core.config import settings
from app.core.errors import AlreadyUsed, Expired, Forbidden, InternalError, NotFound, ValidationFailed
from app.core.timeutil import parse_timestamp, utcnow
from app.domain.payloads import serialize_qr_payload
from app.repositories.qr_code import QRCodeRepository
from app.repositories.stamp_card import StampCardRepository
from app.services.qr_generator import ERROR_CORRECTION_LEVELS, generate_qr_code_base64

logger = logging.getLogger(__name__)


def generate_code() -> str:
    """Opaque, unguessable QR token."""
    return secrets.token_hex(16)


def is_active(qr_code: dict, now: datetime) -> bool:
    if parse_timestamp(qr_code["expires_at"]) <= now:
        return False
    return not (qr_code.get("is_single_use") and qr_code.get("is_used"))


class QRCodeService:

    def issue(
        self,
        merchant_id: str,
        card_id: str,
        expires_in_hours: int = 24,
        is_single_use: bool = False,
        security_level: str = "M",
        now: datetime | None = None,
    ) -> dict:
        """Create a QR code for one of the merchant's cards.

        Returns:
            Dict with 'qr_code' (the stored row), 'qr_value' (serialized
            payload) and 'qr_image' (PNG data URL)
        """
        now = now or utcnow()

        if not card_id:
            raise ValidationFailed("Card ID is required")
        if not settings.qr_min_expiry_hours <= expires_in_hours <= settings.qr_max_expiry_hours:
            raise ValidationFailed(
                f"Expiry hours must be between {settings.qr_min_expiry_hours} and {settings.qr_max_expiry_hours}"
            )
        if security_level not in ERROR_CORRECTION_LEVELS:
            raise ValidationFailed("Security level must be one of L, M, Q or H")

        card = StampCardRepository.get_owned(card_id, merchant_id)
        if not card:
            raise Forbidden("You do not have permission to generate QR codes for this card")

        qr_code = QRCodeRepository.create(
            merchant_id=merchant_id,
            card_id=card_id,
            code=generate_code(),
            created_at=now,
            expires_at=now + timedelta(hours=expires_in_hours),
            is_single_use=is_single_use,
        )
        if not qr_code:
            raise InternalError("Failed to create QR code")

        qr_value = serialize_qr_payload(qr_code, now)
        logger.info(
            f"Issued QR code {qr_code['id']} for card {card_id} "
            f"(expires in {expires_in_hours}h, single_use={is_single_use})"
        )
        return {
            "qr_code": qr_code,
            "qr_value": qr_value,
            "qr_image": generate_qr_code_base64(qr_value, security_level),
        }

    def list_active(self, merchant_id: str, card_id: str, now: datetime | None = None) -> list[dict]:
        """Unexpired codes for a card, excluding consumed single-use codes."""
        now = now or utcnow()
        if not StampCardRepository.get_owned(card_id, merchant_id):
            raise Forbidden("You do not have permission to view QR codes for this card")
        return [qr for qr in QRCodeRepository.list_unexpired(card_id, merchant_id, now) if is_active(qr, now)]

    def refresh(self, merchant_id: str, qr_code_id: str, security_level: str = "M", now: datetime | None = None) -> dict:
        """Re-serialize an active code with a fresh timestamp for display."""
        now = now or utcnow()
        if security_level not in ERROR_CORRECTION_LEVELS:
            raise ValidationFailed("Security level must be one of L, M, Q or H")

        qr_code = self._get_owned(merchant_id, qr_code_id)
        if parse_timestamp(qr_code["expires_at"]) <= now:
            raise Expired("QR code has expired")
        if qr_code.get("is_single_use") and qr_code.get("is_used"):
            raise AlreadyUsed("QR code has already been used")

        qr_value = serialize_qr_payload(qr_code, now)
        return {
            "qr_code": qr_code,
            "qr_value": qr_value,
            "qr_image": generate_qr_code_base64(qr_value, security_level),
        }

    def delete(self, merchant_id: str, qr_code_id: str) -> None:
        self._get_owned(merchant_id, qr_code_id)
        QRCodeRepository.delete(qr_code_id)
        logger.info(f"Deleted QR code {qr_code_id}")

    def _get_owned(self, merchant_id: str, qr_code_id: str) -> dict:
        qr_code = QRCodeRepository.get_by_id(qr_code_id)
        if not qr_code:
            raise NotFound("QR code not found")
        if qr_code["merchant_id"] != merchant_id:
            raise Forbidden("You do not have permission to manage this QR code")
        return qr_code


def create_qr_code_service() -> QRCodeService:
    return QRCodeService()
