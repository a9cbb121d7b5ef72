import json
import re
from dataclasses import dataclass
from typing import Optional

from app.core.errors import ValidationFailed
from app.domain.payloads import REWARD_CODE_PATTERN, parse_qr_payload
from app.domain.schemas import QRPayload

STAMP_QR = "stamp_qr"
REWARD_CODE = "reward_code"
QR_TOKEN = "qr_token"

QR_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{32}$")


@dataclass
class ScannedInput:
    kind: str
    value: str
    payload: Optional[QRPayload] = None


def parse_scanned_input(raw: str | None) -> ScannedInput:
    """Classify text from a camera scan, an uploaded image or manual entry.

    Stamp QR payloads are JSON objects with type "stamp"; reward codes are
    six letters or digits in any case; a bare 32-character hex string is a
    QR token typed in by hand.
    """
    text = (raw or "").strip()
    if not text:
        raise ValidationFailed("Nothing was scanned")

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            raise ValidationFailed("Invalid QR code format")
        if isinstance(data, dict) and data.get("type") == "stamp":
            return ScannedInput(kind=STAMP_QR, value=text, payload=parse_qr_payload(text))
        raise ValidationFailed("This QR code is not a stamp card code")

    upper = text.upper()
    if REWARD_CODE_PATTERN.match(upper):
        return ScannedInput(kind=REWARD_CODE, value=upper)

    if QR_TOKEN_PATTERN.match(text.lower()):
        return ScannedInput(kind=QR_TOKEN, value=text.lower())

    raise ValidationFailed("Unrecognized code. Scan a stamp QR code or enter a 6-character reward code.")
