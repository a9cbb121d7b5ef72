from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from app.core.errors import RateLimited
from app.core.timeutil import to_iso
from app.services import rate_limit
from app.services.rate_limit import StampRateLimiter, merchant_key, pair_key
from tests.fakes import CARD_ID, CUSTOMER_ID, FIXED_NOW, MERCHANT_ID

KEYS = (merchant_key(MERCHANT_ID), pair_key(MERCHANT_ID, CUSTOMER_ID))


@pytest.fixture(autouse=True)
def clean_synced_keys():
    rate_limit._synced_keys.clear()
    yield
    rate_limit._synced_keys.clear()


@pytest.fixture
def redis_client():
    client = MagicMock()
    pipe = MagicMock()
    client.pipeline.return_value = pipe
    with patch("app.services.rate_limit.is_redis_available", return_value=True), \
            patch("app.services.rate_limit.get_redis", return_value=client):
        yield client, pipe


@pytest.fixture
def synced():
    rate_limit._synced_keys.update(KEYS)


def add_stamps(db, count, customer_id=CUSTOMER_ID, minutes_ago=10):
    for i in range(count):
        db.insert("stamp_transactions", {
            "card_id": CARD_ID,
            "customer_id": customer_id or f"walk-in-{i}",
            "merchant_id": MERCHANT_ID,
            "type": "stamp",
            "count": 1,
            "timestamp": to_iso(FIXED_NOW - timedelta(minutes=minutes_ago)),
            "metadata": {},
        })


def test_uses_sorted_set_counts(redis_client, synced, fake_db):
    client, pipe = redis_client
    pipe.execute.return_value = [0, 99, 1, 0, 19, 1]

    StampRateLimiter().check(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)

    since = (FIXED_NOW - timedelta(minutes=60)).timestamp()
    pipe.zremrangebyscore.assert_any_call(merchant_key(MERCHANT_ID), "-inf", since)
    pipe.zcard.assert_any_call(pair_key(MERCHANT_ID, CUSTOMER_ID))
    assert ("stamp_transactions", "select") not in fake_db.calls


@pytest.mark.parametrize("counts, scope", [([0, 100, 1, 0, 0, 1], "merchant"), ([0, 5, 1, 0, 20, 1], "customer")])
def test_full_window_is_rejected(redis_client, synced, counts, scope):
    _, pipe = redis_client
    pipe.execute.return_value = counts

    with pytest.raises(RateLimited) as exc_info:
        StampRateLimiter().check(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)

    assert exc_info.value.context["scope"] == scope


def test_empty_redis_is_rebuilt_from_ledger(redis_client, synced, fake_db):
    _, pipe = redis_client
    add_stamps(fake_db, 100, customer_id=None)
    # Redis came back empty: both keys are gone
    pipe.execute.side_effect = [[0, 0, 0, 0, 0, 0], None, None]

    with pytest.raises(RateLimited) as exc_info:
        StampRateLimiter().check(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)

    assert exc_info.value.context["scope"] == "merchant"
    merchant_zadd = next(c for c in pipe.zadd.call_args_list if c.args[0] == merchant_key(MERCHANT_ID))
    assert len(merchant_zadd.args[1]) == 100
    pipe.delete.assert_any_call(merchant_key(MERCHANT_ID))


def test_window_is_rebuilt_once_per_process(redis_client, fake_db):
    _, pipe = redis_client
    add_stamps(fake_db, 3)
    # Keys exist but this process has never checked them against the ledger
    pipe.execute.side_effect = [[0, 1, 1, 0, 1, 1], None, None, [0, 4, 1, 0, 4, 1]]

    limiter = StampRateLimiter()
    limiter.check(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)
    assert set(KEYS) <= rate_limit._synced_keys
    selects = fake_db.calls.count(("stamp_transactions", "select"))

    limiter.check(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)
    assert fake_db.calls.count(("stamp_transactions", "select")) == selects


def test_record_adds_member_to_both_windows(redis_client):
    _, pipe = redis_client

    StampRateLimiter().record(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)

    keys = [call.args[0] for call in pipe.zadd.call_args_list]
    assert keys == list(KEYS)
    pipe.execute.assert_called_once()


def test_failed_record_forces_rebuild(redis_client, synced):
    _, pipe = redis_client
    pipe.execute.side_effect = ConnectionError("redis went away")

    StampRateLimiter().record(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)

    assert rate_limit._synced_keys == set()


def test_falls_back_to_ledger_when_redis_errors(redis_client, synced, fake_db):
    _, pipe = redis_client
    pipe.execute.side_effect = ConnectionError("redis went away")

    # Empty ledger: allowed
    StampRateLimiter().check(MERCHANT_ID, CUSTOMER_ID, FIXED_NOW)
    assert ("stamp_transactions", "select") in fake_db.calls
    assert rate_limit._synced_keys == set()
