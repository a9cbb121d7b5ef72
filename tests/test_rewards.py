from datetime import timedelta
from unittest.mock import patch

import pytest

from app.core.errors import AlreadyUsed, Expired, Forbidden, NotFound, ValidationFailed
from app.core.timeutil import to_iso
from app.domain.schemas import StampIssueRequest
from app.services.rewards import RewardClaimService, RewardRedemptionService
from app.services.stamps import StampIssuanceService
from tests.fakes import CARD_ID, CUSTOMER_ID, FIXED_NOW, MERCHANT_ID, OTHER_MERCHANT_ID


@pytest.fixture
def small_card_db(fake_db):
    fake_db.add_merchant(MERCHANT_ID)
    fake_db.add_merchant(OTHER_MERCHANT_ID)
    fake_db.add_profile()
    fake_db.add_card(total_stamps=5, reward="Free Coffee")
    return fake_db


@pytest.fixture
def redemption():
    return RewardRedemptionService()


def issue(merchant, count, now=FIXED_NOW):
    request = StampIssueRequest(method="direct", card_id=CARD_ID, customer_id=CUSTOMER_ID, count=count)
    return StampIssuanceService().issue(request, merchant, now=now)


def earn_reward(merchant, now=FIXED_NOW) -> str:
    result = issue(merchant, 5, now=now)
    assert result.reward_earned
    return result.reward_code


class TestEndToEnd:

    def test_earn_then_redeem_once(self, small_card_db, redemption, merchant):
        first = issue(merchant, 4)
        assert first.stamp_card["current_stamps"] == 4
        assert first.reward_earned is False

        second = issue(merchant, 1)
        assert second.stamp_card["current_stamps"] == 5
        assert second.reward_earned is True
        code = second.reward_code

        result = redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW + timedelta(hours=1))
        assert result.reward == "Free Coffee"
        assert result.customer_id == CUSTOMER_ID
        assert result.transaction["type"] == "redeem"
        assert result.transaction["reward_code"] == code
        assert result.transaction["redeemed_at"]

        with pytest.raises(AlreadyUsed, match="already been redeemed"):
            redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW + timedelta(hours=2))


class TestRedeem:

    def test_links_back_to_earning_transaction(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        earned_tx = small_card_db.rows("stamp_transactions")[0]

        result = redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)

        assert result.transaction["metadata"]["earned_transaction_id"] == earned_tx["id"]
        [grant] = small_card_db.rows("reward_grants")
        assert grant["status"] == "redeemed"
        assert grant["version"] == 2
        assert grant["redeemed_transaction_id"] == result.transaction["id"]

    def test_resets_card_that_was_never_claimed(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)

        assert small_card_db.rows("customer_stamp_cards")[0]["current_stamps"] == 0
        assert small_card_db.rows("reward_grants")[0]["claimed_at"]

    def test_keeps_stamps_collected_after_claim(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW)
        issue(merchant, 2, now=FIXED_NOW + timedelta(minutes=1))

        redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW + timedelta(minutes=2))

        assert small_card_db.rows("customer_stamp_cards")[0]["current_stamps"] == 2

    def test_code_is_normalized(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        result = redemption.redeem(f"  {code.lower()} ", MERCHANT_ID, now=FIXED_NOW)
        assert result.transaction["reward_code"] == code

    @pytest.mark.parametrize("raw", ["", "ABC12", "ABC1234", "ABC-12", None])
    def test_rejects_malformed_code(self, small_card_db, redemption, raw):
        with pytest.raises(ValidationFailed):
            redemption.redeem(raw, MERCHANT_ID, now=FIXED_NOW)

    def test_unknown_code(self, small_card_db, redemption):
        with pytest.raises(NotFound, match="Invalid reward code"):
            redemption.redeem("ZZZ999", MERCHANT_ID, now=FIXED_NOW)

    def test_other_merchant_is_forbidden(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        with pytest.raises(Forbidden):
            redemption.redeem(code, OTHER_MERCHANT_ID, now=FIXED_NOW)
        assert small_card_db.rows("reward_grants")[0]["status"] == "earned"

    def test_second_attempt_fails_for_any_merchant(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)
        with pytest.raises(AlreadyUsed):
            redemption.redeem(code, OTHER_MERCHANT_ID, now=FIXED_NOW)

    def test_valid_at_23h59m(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        result = redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW + timedelta(hours=23, minutes=59))
        assert result.reward == "Free Coffee"

    def test_expires_after_24h(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)

        with pytest.raises(Expired):
            redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW + timedelta(hours=24, seconds=1))
        assert small_card_db.rows("reward_grants")[0]["status"] == "expired"

        # Terminal: stays expired
        with pytest.raises(Expired):
            redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW + timedelta(hours=1))

    def test_missing_card_definition(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        small_card_db.tables["stamp_cards"] = []
        with pytest.raises(NotFound):
            redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)

    def test_losing_concurrent_redemption_is_already_used(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        with patch("app.services.rewards.RewardGrantRepository.mark_redeemed", return_value=None):
            with pytest.raises(AlreadyUsed):
                redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)
        assert not any(tx["type"] == "redeem" for tx in small_card_db.rows("stamp_transactions"))

    def test_restores_grant_from_ledger(self, small_card_db, redemption):
        small_card_db.insert("stamp_transactions", {
            "card_id": CARD_ID,
            "customer_id": CUSTOMER_ID,
            "merchant_id": MERCHANT_ID,
            "type": "stamp",
            "count": 1,
            "reward_code": "Q7K2M9",
            "timestamp": to_iso(FIXED_NOW),
            "metadata": {},
        })

        result = redemption.redeem("Q7K2M9", MERCHANT_ID, now=FIXED_NOW + timedelta(hours=3))

        assert result.reward == "Free Coffee"
        [grant] = small_card_db.rows("reward_grants")
        assert grant["status"] == "redeemed"

    def test_ledger_redemption_counts_as_used(self, small_card_db, redemption):
        small_card_db.insert("stamp_transactions", {
            "card_id": CARD_ID,
            "customer_id": CUSTOMER_ID,
            "merchant_id": MERCHANT_ID,
            "type": "redeem",
            "count": 0,
            "reward_code": "Q7K2M9",
            "timestamp": to_iso(FIXED_NOW),
            "metadata": {},
        })
        with pytest.raises(AlreadyUsed):
            redemption.redeem("Q7K2M9", MERCHANT_ID, now=FIXED_NOW)


class TestClaim:

    def test_claim_reuses_earned_code_and_resets(self, small_card_db, merchant):
        code = earn_reward(merchant)

        result = RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW + timedelta(minutes=5))

        assert result.reward_code == code
        assert result.reward == "Free Coffee"
        assert result.stamp_card["current_stamps"] == 0
        assert result.transaction["type"] == "reward"
        assert len(small_card_db.rows("reward_grants")) == 1

    def test_claim_mints_new_code_when_original_lapsed(self, small_card_db, merchant):
        code = earn_reward(merchant)

        result = RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW + timedelta(hours=30))

        assert result.reward_code != code
        assert len(small_card_db.rows("reward_grants")) == 2

    def test_claim_needs_full_card(self, small_card_db, merchant):
        issue(merchant, 3)
        with pytest.raises(ValidationFailed, match="You need 2 more stamps"):
            RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW)

    def test_claim_without_card(self, small_card_db):
        with pytest.raises(NotFound):
            RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW)

    def test_new_accrual_after_claim_earns_again(self, small_card_db, merchant):
        first = earn_reward(merchant)
        RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW)

        second = earn_reward(merchant, now=FIXED_NOW + timedelta(minutes=1))

        assert second != first

    def test_redeemed_card_cannot_be_claimed_for_a_second_code(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)

        with pytest.raises(ValidationFailed):
            RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW + timedelta(minutes=1))
        assert len(small_card_db.rows("reward_grants")) == 1

    def test_claim_finishes_reset_left_over_from_redemption(self, small_card_db, redemption, merchant):
        code = earn_reward(merchant)
        with patch("app.services.rewards.CustomerCardRepository.get", side_effect=ConnectionError("db down")):
            redemption.redeem(code, MERCHANT_ID, now=FIXED_NOW)
        assert small_card_db.rows("customer_stamp_cards")[0]["current_stamps"] == 5

        with pytest.raises(AlreadyUsed):
            RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW + timedelta(minutes=1))

        assert small_card_db.rows("customer_stamp_cards")[0]["current_stamps"] == 0
        assert len(small_card_db.rows("reward_grants")) == 1
        # Nothing left to claim
        with pytest.raises(ValidationFailed):
            RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW + timedelta(minutes=2))

    def test_lapsed_grant_is_closed_when_a_new_code_is_minted(self, small_card_db, merchant):
        code = earn_reward(merchant)

        RewardClaimService().claim(CUSTOMER_ID, CARD_ID, now=FIXED_NOW + timedelta(hours=30))

        old = next(g for g in small_card_db.rows("reward_grants") if g["reward_code"] == code)
        assert old["status"] == "expired"
        assert old["claimed_at"]
