"""
Pending customer merge.

Stamps issued to an email with no account accrue against a pending customer
id. When that person signs up, their pending cards, ledger entries and
reward grants are moved onto the real account.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from app.core.errors import ValidationFailed
from app.core.timeutil import utcnow
from app.repositories.customer_card import CustomerCardRepository
from app.repositories.pending_customer import PendingCustomerRepository
from app.repositories.reward_grant import RewardGrantRepository
from app.repositories.stamp_card import StampCardRepository
from app.repositories.transaction import TransactionRepository

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    merged: bool
    cards_moved: int = 0
    cards_combined: int = 0


class PendingCustomerService:

    def merge(self, email: str | None, user_id: str, now: datetime | None = None) -> MergeResult:
        """Move everything held by the pending customer for `email` onto `user_id`.

        Safe to call repeatedly; a merged or unknown email is a no-op.
        """
        now = now or utcnow()
        if not email:
            raise ValidationFailed("Your account has no email address to match")

        pending = PendingCustomerRepository.get_by_email(email)
        if not pending or pending.get("merged_into"):
            return MergeResult(merged=False)

        moved = combined = 0
        for pending_card in CustomerCardRepository.list_by_customer(pending["id"]):
            existing = CustomerCardRepository.get(pending_card["card_id"], user_id)
            if not existing:
                CustomerCardRepository.reassign(pending_card["id"], user_id)
                moved += 1
                continue

            card = StampCardRepository.get_by_id(pending_card["card_id"])
            total = card["total_stamps"] if card else existing["current_stamps"]
            before = existing.get("current_stamps") or 0
            combined_stamps = min(before + (pending_card.get("current_stamps") or 0), total)
            if combined_stamps != before and not CustomerCardRepository.compare_and_set_stamps(
                existing["id"], before, combined_stamps
            ):
                logger.warning(f"Customer card {existing['id']} changed during merge, keeping its balance")
            CustomerCardRepository.delete(pending_card["id"])
            combined += 1

        TransactionRepository.reassign_customer(pending["id"], user_id)
        RewardGrantRepository.reassign_customer(pending["id"], user_id)
        PendingCustomerRepository.mark_merged(pending["id"], user_id, now)

        logger.info(
            f"Merged pending customer {pending['id']} into {user_id} "
            f"({moved} cards moved, {combined} combined)"
        )
        return MergeResult(merged=True, cards_moved=moved, cards_combined=combined)


def create_pending_customer_service() -> PendingCustomerService:
    return PendingCustomerService()
