"""
Reward redemption and claiming.

A reward code moves EARNED -> REDEEMED when staff confirm it within the
validity window, or EARNED -> EXPIRED once the window has passed. Both end
states are terminal.

A completed card is reset to zero exactly once per grant, by whichever comes
first: the customer claiming the reward from their own card, or the merchant
redeeming the code. The grant's claimed_at records that the reset happened,
so a card whose reward was already redeemed can never mint a second code.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.core.errors import AlreadyUsed, Conflict, Expired, Forbidden, NotFound, ValidationFailed
from app.core.timeutil import parse_timestamp, to_iso, utcnow
from app.domain.payloads import normalize_reward_code
from app.repositories.customer_card import CustomerCardRepository
from app.repositories.reward_grant import EARNED, REDEEMED, RewardGrantRepository
from app.repositories.stamp_card import StampCardRepository
from app.repositories.transaction import TransactionRepository
from app.services.stamps import joined_stamp_card, new_reward_code

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    transaction: dict
    reward: str
    customer_id: str


@dataclass
class ClaimResult:
    reward_code: str
    reward: str
    stamp_card: dict
    transaction: Optional[dict] = None


class RewardRedemptionService:

    def __init__(self, ttl: timedelta | None = None):
        self.ttl = ttl or timedelta(hours=settings.reward_code_ttl_hours)

    def redeem(
        self,
        reward_code: str,
        merchant_id: str,
        client_meta: dict | None = None,
        now: datetime | None = None,
    ) -> RedemptionResult:
        now = now or utcnow()
        client_meta = client_meta or {}
        code = normalize_reward_code(reward_code)

        grant = RewardGrantRepository.get_by_code(code)
        if (grant and grant["status"] == REDEEMED) or TransactionRepository.has_redemption(code):
            raise AlreadyUsed("This reward has already been redeemed")

        if not grant:
            grant = self._grant_from_ledger(code)
        if not grant:
            raise NotFound("Invalid reward code")

        if grant["merchant_id"] != merchant_id:
            logger.warning(f"Merchant {merchant_id} tried to redeem reward {code} issued by {grant['merchant_id']}")
            raise Forbidden("You don't have permission to redeem this reward")

        if grant["status"] != EARNED or now - parse_timestamp(grant["earned_at"]) > self.ttl:
            if grant["status"] == EARNED:
                RewardGrantRepository.mark_expired(grant["id"], grant["version"])
            raise Expired("This reward code has expired")

        card = StampCardRepository.get_by_id(grant["card_id"])
        if not card:
            raise NotFound("Stamp card for this reward no longer exists")

        # Single conditional update decides the winner among concurrent redemptions
        if not RewardGrantRepository.mark_redeemed(grant["id"], grant["version"], now):
            raise AlreadyUsed("This reward has already been redeemed")

        if not grant.get("claimed_at"):
            self._reset_completed_card(grant, card, now)

        metadata = {
            "earned_transaction_id": grant.get("earned_transaction_id"),
            "reward_grant_id": grant["id"],
            "ip": client_meta.get("ip"),
            "user_agent": client_meta.get("user_agent"),
        }
        transaction = None
        try:
            transaction = TransactionRepository.create(
                card_id=grant["card_id"],
                customer_id=grant["customer_id"],
                merchant_id=merchant_id,
                type="redeem",
                count=0,
                reward_code=code,
                metadata=metadata,
                timestamp=now,
            )
            if transaction:
                RewardGrantRepository.set_redeemed_transaction(grant["id"], transaction["id"])
        except Exception as e:
            logger.error(f"Reward {code} redeemed but the ledger entry failed: {e}")

        if not transaction:
            transaction = {
                "card_id": grant["card_id"],
                "customer_id": grant["customer_id"],
                "merchant_id": merchant_id,
                "type": "redeem",
                "count": 0,
                "reward_code": code,
                "timestamp": to_iso(now),
                "metadata": metadata,
            }

        logger.info(f"Merchant {merchant_id} redeemed reward {code} for customer {grant['customer_id']}")
        return RedemptionResult(
            transaction={**transaction, "redeemed_at": to_iso(now)},
            reward=card["reward"],
            customer_id=grant["customer_id"],
        )

    def _reset_completed_card(self, grant: dict, card: dict, now: datetime) -> None:
        """Start the customer's next card when the merchant redeems before the customer claims."""
        try:
            customer_card = CustomerCardRepository.get(grant["card_id"], grant["customer_id"])
            if not customer_card:
                return
            current = customer_card.get("current_stamps") or 0
            if current < card["total_stamps"]:
                return
            if CustomerCardRepository.compare_and_set_stamps(customer_card["id"], current, 0):
                RewardGrantRepository.mark_claimed(grant["id"], now)
            else:
                logger.warning(f"Card {grant['card_id']} changed while redeeming {grant['reward_code']}, not resetting")
        except Exception as e:
            logger.error(f"Reward {grant['reward_code']} redeemed but resetting the card failed: {e}")

    def _grant_from_ledger(self, code: str) -> dict | None:
        """Rebuild a missing grant from the ledger entry that issued the code."""
        earned = TransactionRepository.get_reward_earned(code)
        if not earned:
            return None
        logger.warning(f"Reward {code} has no grant row, restoring it from transaction {earned['id']}")
        try:
            return RewardGrantRepository.create(
                reward_code=code,
                card_id=earned["card_id"],
                customer_id=earned["customer_id"],
                merchant_id=earned["merchant_id"],
                earned_at=parse_timestamp(earned["timestamp"]),
                earned_transaction_id=earned["id"],
            )
        except Exception as e:
            logger.error(f"Failed to restore reward grant {code}: {e}")
            raise


class RewardClaimService:
    """Customer-facing path: turn a completed card into a reward code and start a new card."""

    def __init__(self, ttl: timedelta | None = None):
        self.ttl = ttl or timedelta(hours=settings.reward_code_ttl_hours)

    def claim(self, customer_id: str, card_id: str, now: datetime | None = None) -> ClaimResult:
        now = now or utcnow()

        card = StampCardRepository.get_by_id(card_id)
        customer_card = CustomerCardRepository.get(card_id, customer_id)
        if not card or not customer_card:
            raise NotFound("Failed to find loyalty card")

        total = card["total_stamps"]
        current = customer_card.get("current_stamps") or 0
        if current < total:
            raise ValidationFailed(f"Not enough stamps to redeem. You need {total - current} more stamps.")

        # Secure the code before resetting so a failed reset leaves a reusable grant
        grant = RewardGrantRepository.find_unclaimed(card_id, customer_id)
        if grant and grant["status"] == REDEEMED:
            # The merchant already redeemed this card's reward; only the reset is outstanding
            logger.warning(f"Reward {grant['reward_code']} was redeemed before card {card_id} was reset")
            self._reset(customer_card["id"], current)
            RewardGrantRepository.mark_claimed(grant["id"], now)
            raise AlreadyUsed("This reward has already been redeemed")

        if grant and grant["status"] == EARNED and now - parse_timestamp(grant["earned_at"]) <= self.ttl:
            code = grant["reward_code"]
        else:
            if grant:
                if grant["status"] == EARNED:
                    RewardGrantRepository.mark_expired(grant["id"], grant["version"])
                RewardGrantRepository.mark_claimed(grant["id"], now)
            # Original grant expired or was never written; start a fresh window
            code = new_reward_code()
            grant = RewardGrantRepository.create(
                reward_code=code,
                card_id=card_id,
                customer_id=customer_id,
                merchant_id=card["merchant_id"],
                earned_at=now,
            )

        reset = self._reset(customer_card["id"], current)
        if grant:
            try:
                RewardGrantRepository.mark_claimed(grant["id"], now)
            except Exception as e:
                logger.error(f"Card {card_id} reset but reward grant {code} was not marked claimed: {e}")

        transaction = None
        try:
            transaction = TransactionRepository.create(
                card_id=card_id,
                customer_id=customer_id,
                merchant_id=card["merchant_id"],
                type="reward",
                count=0,
                reward_code=code,
                metadata={
                    "stamps_before": current,
                    "stamps_after": 0,
                    "reward_grant_id": grant["id"] if grant else None,
                },
                timestamp=now,
            )
        except Exception as e:
            logger.error(f"Reward {code} claimed by {customer_id} but the ledger entry failed: {e}")

        logger.info(f"Customer {customer_id} claimed reward {code} on card {card_id}")
        return ClaimResult(
            reward_code=code,
            reward=card["reward"],
            stamp_card=joined_stamp_card(reset, card),
            transaction=transaction,
        )

    @staticmethod
    def _reset(customer_card_id: str, current: int) -> dict:
        reset = CustomerCardRepository.compare_and_set_stamps(customer_card_id, current, 0)
        if not reset:
            raise Conflict("Your card was updated by another request. Please try again.")
        return reset


def create_redemption_service() -> RewardRedemptionService:
    return RewardRedemptionService()


def create_claim_service() -> RewardClaimService:
    return RewardClaimService()
