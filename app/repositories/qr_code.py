from datetime import datetime

from app.core.timeutil import to_iso
from database.connection import get_db, with_retry


class QRCodeRepository:

    @staticmethod
    @with_retry()
    def create(
        merchant_id: str,
        card_id: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
        is_single_use: bool = False,
    ) -> dict | None:
        """Create a stamp QR code record."""
        db = get_db()
        result = db.table("stamp_qr_codes").insert({
            "merchant_id": merchant_id,
            "card_id": card_id,
            "code": code,
            "created_at": to_iso(created_at),
            "expires_at": to_iso(expires_at),
            "is_single_use": is_single_use,
            "is_used": False,
        }).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(qr_code_id: str) -> dict | None:
        db = get_db()
        result = db.table("stamp_qr_codes").select("*").eq("id", qr_code_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_code(code: str, card_id: str) -> dict | None:
        """Look up a QR code by its token, scoped to the card it was minted for."""
        db = get_db()
        result = db.table("stamp_qr_codes").select("*").eq(
            "code", code
        ).eq("card_id", card_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def list_unexpired(card_id: str, merchant_id: str, now: datetime) -> list[dict]:
        """Codes for a card that have not passed expires_at, newest first."""
        db = get_db()
        result = db.table("stamp_qr_codes").select("*").eq(
            "card_id", card_id
        ).eq("merchant_id", merchant_id).gt(
            "expires_at", to_iso(now)
        ).order("created_at", desc=True).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def mark_used(qr_code_id: str) -> bool:
        """Consume a single-use code. Returns False if it was already consumed."""
        db = get_db()
        result = db.table("stamp_qr_codes").update({
            "is_used": True,
        }).eq("id", qr_code_id).eq("is_used", False).execute()
        return bool(result and result.data)

    @staticmethod
    @with_retry()
    def delete(qr_code_id: str) -> bool:
        db = get_db()
        result = db.table("stamp_qr_codes").delete().eq("id", qr_code_id).execute()
        return bool(result and result.data)
