from datetime import datetime

from app.core.timeutil import to_iso, utcnow
from database.connection import get_db, with_retry


class TransactionRepository:
    """Append-only stamp ledger (stamp_transactions). Rows are never updated or deleted,
    except for re-pointing a pending customer id on account merge."""

    @staticmethod
    @with_retry()
    def create(
        card_id: str,
        customer_id: str,
        merchant_id: str,
        type: str,
        count: int = 0,
        reward_code: str | None = None,
        metadata: dict | None = None,
        timestamp: datetime | None = None,
    ) -> dict | None:
        """Append a ledger entry."""
        db = get_db()
        data = {
            "card_id": card_id,
            "customer_id": customer_id,
            "merchant_id": merchant_id,
            "type": type,
            "count": count,
            "reward_code": reward_code,
            "timestamp": to_iso(timestamp or utcnow()),
            "metadata": metadata or {},
        }
        result = db.table("stamp_transactions").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(transaction_id: str) -> dict | None:
        db = get_db()
        result = db.table("stamp_transactions").select("*").eq("id", transaction_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def count_stamps_since(merchant_id: str, since: datetime, customer_id: str | None = None) -> int:
        """Count stamp transactions recorded by a merchant (optionally for one customer) since a time."""
        db = get_db()
        query = db.table("stamp_transactions").select("id", count="exact").eq(
            "merchant_id", merchant_id
        ).eq("type", "stamp").gte("timestamp", to_iso(since))
        if customer_id:
            query = query.eq("customer_id", customer_id)
        result = query.execute()
        return result.count if result and result.count else 0

    @staticmethod
    @with_retry()
    def list_stamps_since(merchant_id: str, since: datetime, customer_id: str | None = None) -> list[dict]:
        """Ids and timestamps of the stamp transactions counted by count_stamps_since."""
        db = get_db()
        query = db.table("stamp_transactions").select("id, timestamp").eq(
            "merchant_id", merchant_id
        ).eq("type", "stamp").gte("timestamp", to_iso(since))
        if customer_id:
            query = query.eq("customer_id", customer_id)
        result = query.execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def has_redemption(reward_code: str) -> bool:
        """Check if a redeem entry already carries this reward code."""
        db = get_db()
        result = (
            db.table("stamp_transactions")
            .select("id")
            .eq("reward_code", reward_code)
            .eq("type", "redeem")
            .limit(1)
            .execute()
        )
        return bool(result and result.data)

    @staticmethod
    @with_retry()
    def reassign_customer(old_customer_id: str, new_customer_id: str) -> int:
        db = get_db()
        result = db.table("stamp_transactions").update({
            "customer_id": new_customer_id,
        }).eq("customer_id", old_customer_id).execute()
        return len(result.data) if result and result.data else 0

    @staticmethod
    @with_retry()
    def get_reward_earned(reward_code: str) -> dict | None:
        """Find the completion entry (stamp or claim) that issued a reward code."""
        db = get_db()
        result = (
            db.table("stamp_transactions")
            .select("*")
            .eq("reward_code", reward_code)
            .in_("type", ["stamp", "reward"])
            .order("timestamp")
            .limit(1)
            .execute()
        )
        return result.data[0] if result and result.data else None
