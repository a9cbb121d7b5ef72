"""Wire formats shared by the API and the client: stamp QR payloads and reward codes."""

import json
import re
from datetime import datetime

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationFailed
from app.core.timeutil import epoch_ms
from app.domain.schemas import QRPayload

REWARD_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")


def serialize_qr_payload(qr_code: dict, now: datetime) -> str:
    return json.dumps({
        "type": "stamp",
        "code": qr_code["code"],
        "card_id": qr_code["card_id"],
        "merchant_id": qr_code["merchant_id"],
        "timestamp": epoch_ms(now),
    })


def parse_qr_payload(raw: str) -> QRPayload:
    """Parse a scanned stamp QR payload, raising ValidationFailed on anything malformed."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ValidationFailed("Invalid QR code format")
    if not isinstance(data, dict) or data.get("type") != "stamp":
        raise ValidationFailed("Invalid QR code format")
    try:
        return QRPayload.model_validate(data)
    except PydanticValidationError:
        raise ValidationFailed("Invalid QR code format")


def normalize_reward_code(raw: str | None) -> str:
    code = (raw or "").strip().upper()
    if not REWARD_CODE_PATTERN.match(code):
        raise ValidationFailed("Reward code must be exactly 6 letters or digits")
    return code
