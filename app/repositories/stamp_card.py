from database.connection import get_db, with_retry


class StampCardRepository:
    """Merchant-owned stamp card definitions."""

    @staticmethod
    @with_retry()
    def get_by_id(card_id: str) -> dict | None:
        db = get_db()
        result = db.table("stamp_cards").select("*").eq("id", card_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_owned(card_id: str, merchant_id: str) -> dict | None:
        """Get a card only if it belongs to the given merchant."""
        db = get_db()
        result = db.table("stamp_cards").select("*").eq(
            "id", card_id
        ).eq("merchant_id", merchant_id).limit(1).execute()
        return result.data[0] if result and result.data else None
