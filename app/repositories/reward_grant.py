"""
Repository for reward grants.

A grant is created when a customer completes a card and moves
earned -> redeemed (or earned -> expired) exactly once. Transitions are
conditional updates on (status, version) so concurrent redemptions of the
same code cannot both succeed. Separately, claimed_at is set once the
completed card behind the grant has been reset to zero.
"""

from datetime import datetime

from app.core.timeutil import to_iso
from database.connection import get_db, with_retry

EARNED = "earned"
REDEEMED = "redeemed"
EXPIRED = "expired"


class RewardGrantRepository:

    @staticmethod
    @with_retry()
    def create(
        reward_code: str,
        card_id: str,
        customer_id: str,
        merchant_id: str,
        earned_at: datetime,
        earned_transaction_id: str | None = None,
    ) -> dict | None:
        db = get_db()
        result = db.table("reward_grants").insert({
            "reward_code": reward_code,
            "card_id": card_id,
            "customer_id": customer_id,
            "merchant_id": merchant_id,
            "earned_transaction_id": earned_transaction_id,
            "status": EARNED,
            "earned_at": to_iso(earned_at),
            "version": 1,
        }).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_code(reward_code: str) -> dict | None:
        db = get_db()
        result = db.table("reward_grants").select("*").eq("reward_code", reward_code).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def find_unclaimed(card_id: str, customer_id: str) -> dict | None:
        """Most recent grant, in any status, whose card has not been reset yet."""
        db = get_db()
        result = db.table("reward_grants").select("*").eq(
            "card_id", card_id
        ).eq("customer_id", customer_id).is_("claimed_at", "null").order(
            "earned_at", desc=True
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def mark_claimed(grant_id: str, claimed_at: datetime) -> bool:
        """Record that the card behind this grant was reset. Only the first caller wins."""
        db = get_db()
        result = db.table("reward_grants").update({
            "claimed_at": to_iso(claimed_at),
        }).eq("id", grant_id).is_("claimed_at", "null").execute()
        return bool(result and result.data)

    @staticmethod
    @with_retry()
    def mark_redeemed(
        grant_id: str,
        version: int,
        redeemed_at: datetime,
        redeemed_transaction_id: str | None = None,
    ) -> dict | None:
        """earned -> redeemed. Returns None if the grant changed since it was read."""
        db = get_db()
        data = {
            "status": REDEEMED,
            "redeemed_at": to_iso(redeemed_at),
            "version": version + 1,
        }
        if redeemed_transaction_id:
            data["redeemed_transaction_id"] = redeemed_transaction_id
        result = db.table("reward_grants").update(data).eq(
            "id", grant_id
        ).eq("status", EARNED).eq("version", version).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def set_redeemed_transaction(grant_id: str, transaction_id: str) -> None:
        db = get_db()
        db.table("reward_grants").update({
            "redeemed_transaction_id": transaction_id,
        }).eq("id", grant_id).execute()

    @staticmethod
    @with_retry()
    def mark_expired(grant_id: str, version: int) -> bool:
        """earned -> expired. Terminal."""
        db = get_db()
        result = db.table("reward_grants").update({
            "status": EXPIRED,
            "version": version + 1,
        }).eq("id", grant_id).eq("status", EARNED).eq("version", version).execute()
        return bool(result and result.data)

    @staticmethod
    @with_retry()
    def reassign_customer(old_customer_id: str, new_customer_id: str) -> int:
        db = get_db()
        result = db.table("reward_grants").update({
            "customer_id": new_customer_id,
        }).eq("customer_id", old_customer_id).execute()
        return len(result.data) if result and result.data else 0
