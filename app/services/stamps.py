"""
Stamp Issuance Engine.

Validates a stamp-granting request (direct entry or a scanned QR code),
applies rate limits, moves the customer's stamp balance, detects reward
completion and records the ledger entry.

Every rejection happens before the first write. Once stamps have been
granted, a failure to write the ledger entry or the reward grant is logged
and the request still succeeds: the customer has already been shown the new
balance.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.core.errors import (
    AlreadyUsed,
    Conflict,
    Expired,
    Forbidden,
    InternalError,
    NotFound,
    ValidationFailed,
)
from app.core.permissions import Principal
from app.core.timeutil import from_epoch_ms, parse_timestamp, utcnow
from app.domain.payloads import parse_qr_payload
from app.domain.schemas import QRPayload, StampIssueRequest
from app.repositories.customer_card import CustomerCardRepository
from app.repositories.pending_customer import PendingCustomerRepository
from app.repositories.profile import ProfileRepository
from app.repositories.qr_code import QRCodeRepository
from app.repositories.reward_grant import RewardGrantRepository
from app.repositories.stamp_card import StampCardRepository
from app.repositories.transaction import TransactionRepository
from app.services.rate_limit import StampRateLimiter, create_rate_limiter
from database.connection import is_unique_violation

logger = logging.getLogger(__name__)

METHODS = ("direct", "qr")

REWARD_CODE_ALPHABET = string.ascii_uppercase + string.digits

# Optimistic update attempts before giving up with a conflict
MAX_UPDATE_ATTEMPTS = 3


def generate_reward_code(length: int | None = None) -> str:
    length = length or settings.reward_code_length
    return "".join(secrets.choice(REWARD_CODE_ALPHABET) for _ in range(length))


def new_reward_code() -> str:
    """A reward code not held by any existing grant."""
    for _ in range(5):
        code = generate_reward_code()
        if not RewardGrantRepository.get_by_code(code):
            return code
    raise InternalError("Failed to generate a unique reward code")


def joined_stamp_card(customer_card: dict, card: dict) -> dict:
    """Customer progress row with the card definition fields used for display."""
    return {
        **customer_card,
        "card": {
            "id": card["id"],
            "name": card["name"],
            "description": card.get("description"),
            "total_stamps": card["total_stamps"],
            "reward": card["reward"],
            "business_logo": card.get("business_logo"),
            "business_color": card.get("business_color"),
        },
    }


@dataclass
class ResolvedCustomer:
    id: str
    email: Optional[str] = None
    kind: str = "registered"  # or "pending"


@dataclass
class IssuanceResult:
    stamp_card: dict
    stamps_added: int
    reward_earned: bool
    customer: ResolvedCustomer
    message: str
    reward_code: Optional[str] = None
    transaction: Optional[dict] = None
    metadata: dict = field(default_factory=dict)


def validate_count(count) -> int:
    if count is None:
        return 1
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValidationFailed("Count must be a whole number")
    if not 1 <= count <= settings.max_stamps_per_request:
        raise ValidationFailed(f"Count must be between 1 and {settings.max_stamps_per_request}")
    return count


class StampIssuanceService:

    def __init__(self, rate_limiter: StampRateLimiter | None = None):
        self.rate_limiter = rate_limiter or create_rate_limiter()

    def issue(
        self,
        request: StampIssueRequest,
        principal: Principal,
        client_meta: dict | None = None,
        now: datetime | None = None,
    ) -> IssuanceResult:
        now = now or utcnow()
        client_meta = client_meta or {}

        # 1. Request shape
        if request.method not in METHODS:
            raise ValidationFailed("Method must be either 'direct' or 'qr'")
        count = validate_count(request.count)
        has_customer = bool(request.customer_id or request.customer_email)

        qr_code = None
        if request.method == "direct":
            if not principal.is_merchant:
                raise Forbidden("User is not registered as a merchant")
            if not request.card_id:
                raise ValidationFailed("Card ID is required")
            if not has_customer:
                raise ValidationFailed("Customer email or ID is required")
            card_id = request.card_id
            merchant_id = principal.id
        else:
            if not request.qr_code:
                raise ValidationFailed("QR code is required")
            if principal.is_merchant and not has_customer:
                raise ValidationFailed("Customer email or ID is required")

            # 2. QR payload, replay window and code state
            payload = parse_qr_payload(request.qr_code)
            self._check_replay_window(payload, now)
            qr_code = self._load_qr_code(payload, now)
            if principal.is_merchant and payload.merchant_id != principal.id:
                raise Forbidden("This QR code belongs to a different merchant")
            card_id = qr_code["card_id"]
            merchant_id = qr_code["merchant_id"]

        # 3. Card ownership
        card = StampCardRepository.get_by_id(card_id)
        if not card:
            raise NotFound("Card not found")
        if card["merchant_id"] != merchant_id:
            raise Forbidden("Access denied - card belongs to different merchant")
        if card.get("is_active") is False:
            raise Forbidden("This stamp card is no longer active")

        # 4. Customer
        customer = self._resolve_customer(request, principal)

        # 5. Abuse limits
        self.rate_limiter.check(merchant_id, customer.id, now)

        # Consume before granting so a lost race can never grant twice
        if qr_code and qr_code.get("is_single_use"):
            if not QRCodeRepository.mark_used(qr_code["id"]):
                raise AlreadyUsed("QR code has already been used")

        # 6. Balance
        customer_card, before, after = self._apply_stamps(card, customer.id, count)
        total = card["total_stamps"]
        reward_earned = before < total <= after
        stamps_added = after - before
        reward_code = new_reward_code() if reward_earned else None

        # 8. Ledger
        metadata = {
            "method": request.method,
            "ip": client_meta.get("ip"),
            "user_agent": client_meta.get("user_agent"),
            "requested_count": count,
            "stamps_before": before,
            "stamps_after": after,
            "customer_email": customer.email,
            "customer_kind": customer.kind,
            "qr_code_id": qr_code["id"] if qr_code else None,
            "reward_earned": reward_earned,
        }
        transaction = self._record_transaction(
            card_id, customer.id, merchant_id, stamps_added, reward_code, metadata, now
        )
        if reward_earned:
            self._record_grant(reward_code, card_id, customer.id, merchant_id, transaction, now)
        self.rate_limiter.record(merchant_id, customer.id, now)

        if reward_earned:
            message = "Stamps issued and reward earned!"
        elif stamps_added == 0:
            message = "Card is already complete. Ready for reward."
        else:
            message = "Stamps issued successfully"

        logger.info(
            f"Issued {stamps_added} stamp(s) on card {card_id} to {customer.kind} customer {customer.id} "
            f"({before} -> {after}/{total}, reward_earned={reward_earned})"
        )

        return IssuanceResult(
            stamp_card=joined_stamp_card(customer_card, card),
            stamps_added=stamps_added,
            reward_earned=reward_earned,
            reward_code=reward_code,
            customer=customer,
            transaction=transaction,
            message=message,
            metadata=metadata,
        )

    def _check_replay_window(self, payload: QRPayload, now: datetime) -> None:
        try:
            issued_at = from_epoch_ms(payload.timestamp)
        except (OverflowError, OSError, ValueError):
            raise ValidationFailed("Invalid QR code format")
        if issued_at - now > timedelta(seconds=settings.qr_clock_skew_seconds):
            logger.warning(f"Rejected future-dated QR payload for code {payload.code[:8]}...")
            raise Conflict("QR code timestamp is in the future")
        if now - issued_at > timedelta(seconds=settings.qr_replay_window_seconds):
            raise Expired("QR code is too old. Please ask for a fresh code.")

    def _load_qr_code(self, payload: QRPayload, now: datetime) -> dict:
        qr_code = QRCodeRepository.get_by_code(payload.code, payload.card_id)
        if not qr_code or qr_code["merchant_id"] != payload.merchant_id:
            raise NotFound("Invalid or expired QR code")
        if parse_timestamp(qr_code["expires_at"]) < now:
            raise Expired("QR code has expired")
        if qr_code.get("is_single_use") and qr_code.get("is_used"):
            raise AlreadyUsed("QR code has already been used")
        return qr_code

    def _resolve_customer(self, request: StampIssueRequest, principal: Principal) -> ResolvedCustomer:
        if not principal.is_merchant:
            # Customers scanning a code always stamp their own card
            return ResolvedCustomer(id=principal.id, email=principal.email)

        email = str(request.customer_email) if request.customer_email else None
        if request.customer_id:
            return ResolvedCustomer(id=request.customer_id, email=email)

        profile = ProfileRepository.get_by_email(email)
        if profile:
            return ResolvedCustomer(id=profile["id"], email=email)

        pending = PendingCustomerRepository.get_or_create(email)
        if not pending:
            raise InternalError("Failed to register customer email")
        return ResolvedCustomer(id=pending["id"], email=email, kind="pending")

    def _apply_stamps(self, card: dict, customer_id: str, count: int) -> tuple[dict, int, int]:
        """Add `count` stamps capped at total_stamps. Returns (row, before, after)."""
        total = card["total_stamps"]
        for attempt in range(MAX_UPDATE_ATTEMPTS):
            existing = CustomerCardRepository.get(card["id"], customer_id)
            if existing is None:
                after = min(count, total)
                try:
                    created = CustomerCardRepository.create(card["id"], customer_id, after)
                except Exception as e:
                    if is_unique_violation(e):
                        logger.info(f"Customer card for {customer_id} created concurrently, re-reading")
                        continue
                    raise
                if not created:
                    raise InternalError("Failed to create customer card")
                return created, 0, after

            before = existing.get("current_stamps") or 0
            after = min(before + count, total)
            if after == before:
                return existing, before, after

            updated = CustomerCardRepository.compare_and_set_stamps(existing["id"], before, after)
            if updated:
                return updated, before, after
            logger.warning(
                f"Concurrent update on customer card {existing['id']} "
                f"(attempt {attempt + 1}/{MAX_UPDATE_ATTEMPTS})"
            )

        raise Conflict("The stamp card was updated by another request. Please try again.")

    def _record_transaction(
        self,
        card_id: str,
        customer_id: str,
        merchant_id: str,
        count: int,
        reward_code: str | None,
        metadata: dict,
        now: datetime,
    ) -> dict | None:
        try:
            return TransactionRepository.create(
                card_id=card_id,
                customer_id=customer_id,
                merchant_id=merchant_id,
                type="stamp",
                count=count,
                reward_code=reward_code,
                metadata=metadata,
                timestamp=now,
            )
        except Exception as e:
            logger.error(
                f"Stamps granted on card {card_id} to {customer_id} but the ledger entry failed: {e}"
            )
            return None

    def _record_grant(
        self,
        reward_code: str,
        card_id: str,
        customer_id: str,
        merchant_id: str,
        transaction: dict | None,
        now: datetime,
    ) -> None:
        try:
            RewardGrantRepository.create(
                reward_code=reward_code,
                card_id=card_id,
                customer_id=customer_id,
                merchant_id=merchant_id,
                earned_at=now,
                earned_transaction_id=transaction["id"] if transaction else None,
            )
        except Exception as e:
            # Redemption falls back to the ledger entry carrying the code
            logger.error(f"Failed to record reward grant {reward_code} for {customer_id}: {e}")


def create_stamp_service() -> StampIssuanceService:
    return StampIssuanceService()
