import uuid
from datetime import datetime

from app.core.timeutil import to_iso
from database.connection import get_db, is_unique_violation, with_retry


def pending_customer_id(email: str) -> str:
    """Stable id for an unregistered customer, derived from the normalized email."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"pending-customer:{email.strip().lower()}"))


class PendingCustomerRepository:
    """Customers known only by email, holding stamps until they sign up."""

    @staticmethod
    @with_retry()
    def get_by_email(email: str) -> dict | None:
        db = get_db()
        result = db.table("pending_customers").select("*").eq(
            "email", email.strip().lower()
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    def get_or_create(email: str) -> dict:
        existing = PendingCustomerRepository.get_by_email(email)
        if existing:
            return existing
        try:
            return PendingCustomerRepository._create(email)
        except Exception as e:
            # Lost a race with another request for the same email
            if is_unique_violation(e):
                return PendingCustomerRepository.get_by_email(email)
            raise

    @staticmethod
    @with_retry()
    def _create(email: str) -> dict | None:
        db = get_db()
        normalized = email.strip().lower()
        result = db.table("pending_customers").insert({
            "id": pending_customer_id(normalized),
            "email": normalized,
        }).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def mark_merged(pending_id: str, user_id: str, merged_at: datetime) -> None:
        db = get_db()
        db.table("pending_customers").update({
            "merged_into": user_id,
            "merged_at": to_iso(merged_at),
        }).eq("id", pending_id).execute()
