import pytest

from app.core.errors import ValidationFailed
from app.domain.schemas import StampIssueRequest
from app.repositories.pending_customer import pending_customer_id
from app.services.customers import PendingCustomerService
from app.services.stamps import StampIssuanceService
from tests.fakes import CARD_ID, FIXED_NOW

NEW_EMAIL = "sam@example.com"
NEW_USER_ID = "user-sam"


def issue_to_email(merchant, count, card_id=CARD_ID):
    request = StampIssueRequest(method="direct", card_id=card_id, customer_email=NEW_EMAIL, count=count)
    return StampIssuanceService().issue(request, merchant, now=FIXED_NOW)


@pytest.fixture
def service():
    return PendingCustomerService()


def test_moves_pending_cards_to_new_account(seeded_db, service, merchant):
    issue_to_email(merchant, 3)

    result = service.merge(NEW_EMAIL, NEW_USER_ID, now=FIXED_NOW)

    assert result.merged is True
    assert result.cards_moved == 1
    [card] = seeded_db.rows("customer_stamp_cards")
    assert card["customer_id"] == NEW_USER_ID
    assert card["current_stamps"] == 3
    assert all(tx["customer_id"] == NEW_USER_ID for tx in seeded_db.rows("stamp_transactions"))
    [pending] = seeded_db.rows("pending_customers")
    assert pending["merged_into"] == NEW_USER_ID


def test_combines_with_existing_card_capped_at_total(seeded_db, service, merchant):
    issue_to_email(merchant, 6)
    seeded_db.add_customer_card(7, customer_id=NEW_USER_ID)

    result = service.merge(NEW_EMAIL, NEW_USER_ID, now=FIXED_NOW)

    assert result.cards_combined == 1
    [card] = seeded_db.rows("customer_stamp_cards")
    assert card["customer_id"] == NEW_USER_ID
    assert card["current_stamps"] == 10


def test_reward_grants_follow_the_customer(seeded_db, service, merchant):
    earned = issue_to_email(merchant, 10)
    assert earned.customer.id == pending_customer_id(NEW_EMAIL)

    service.merge(NEW_EMAIL, NEW_USER_ID, now=FIXED_NOW)

    [grant] = seeded_db.rows("reward_grants")
    assert grant["customer_id"] == NEW_USER_ID


def test_merge_is_idempotent(seeded_db, service, merchant):
    issue_to_email(merchant, 2)
    service.merge(NEW_EMAIL, NEW_USER_ID, now=FIXED_NOW)

    again = service.merge(NEW_EMAIL, NEW_USER_ID, now=FIXED_NOW)

    assert again.merged is False
    assert seeded_db.rows("customer_stamp_cards")[0]["current_stamps"] == 2


def test_unknown_email_is_a_noop(seeded_db, service):
    assert service.merge("nobody@example.com", NEW_USER_ID).merged is False


def test_requires_email(seeded_db, service):
    with pytest.raises(ValidationFailed):
        service.merge(None, NEW_USER_ID)
