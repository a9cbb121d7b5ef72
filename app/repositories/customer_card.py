from app.core.timeutil import to_iso, utcnow
from database.connection import get_db, with_retry


class CustomerCardRepository:
    """Per-customer stamp progress (customer_stamp_cards)."""

    @staticmethod
    @with_retry()
    def get(card_id: str, customer_id: str) -> dict | None:
        db = get_db()
        result = db.table("customer_stamp_cards").select("*").eq(
            "card_id", card_id
        ).eq("customer_id", customer_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def create(card_id: str, customer_id: str, current_stamps: int) -> dict | None:
        """Create the progress row. Raises APIError 23505 if the pair already exists."""
        db = get_db()
        now = to_iso(utcnow())
        result = db.table("customer_stamp_cards").insert({
            "card_id": card_id,
            "customer_id": customer_id,
            "current_stamps": current_stamps,
            "created_at": now,
            "updated_at": now,
        }).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def compare_and_set_stamps(customer_card_id: str, expected: int, new_value: int) -> dict | None:
        """Set current_stamps only if it still equals `expected`.

        Returns the updated row, or None if another writer got there first.
        """
        db = get_db()
        result = db.table("customer_stamp_cards").update({
            "current_stamps": new_value,
            "updated_at": to_iso(utcnow()),
        }).eq("id", customer_card_id).eq("current_stamps", expected).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def list_by_customer(customer_id: str) -> list[dict]:
        db = get_db()
        result = db.table("customer_stamp_cards").select("*").eq("customer_id", customer_id).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def reassign(customer_card_id: str, customer_id: str) -> dict | None:
        db = get_db()
        result = db.table("customer_stamp_cards").update({
            "customer_id": customer_id,
            "updated_at": to_iso(utcnow()),
        }).eq("id", customer_card_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def delete(customer_card_id: str) -> bool:
        db = get_db()
        result = db.table("customer_stamp_cards").delete().eq("id", customer_card_id).execute()
        return bool(result and result.data)
