from database.connection import get_db, with_retry


class ProfileRepository:
    """Registered customer accounts (public.profiles)."""

    @staticmethod
    @with_retry()
    def get_by_id(profile_id: str) -> dict | None:
        db = get_db()
        result = db.table("profiles").select("*").eq("id", profile_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_email(email: str) -> dict | None:
        """Get a registered customer by email (case-insensitive match on the stored lowercase value)."""
        db = get_db()
        result = db.table("profiles").select("id, email").eq("email", email.strip().lower()).limit(1).execute()
        return result.data[0] if result and result.data else None
