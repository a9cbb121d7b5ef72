import re

from database.schema import SCHEMA

TABLES = [
    "merchants",
    "profiles",
    "stamp_cards",
    "pending_customers",
    "customer_stamp_cards",
    "stamp_qr_codes",
    "stamp_transactions",
    "reward_grants",
]


def test_declares_every_table():
    declared = re.findall(r"CREATE TABLE IF NOT EXISTS (\w+)", SCHEMA)
    assert sorted(declared) == sorted(TABLES)


def test_uniqueness_backs_the_race_handling():
    assert "UNIQUE (card_id, customer_id)" in SCHEMA
    assert "code TEXT UNIQUE NOT NULL" in SCHEMA
    assert re.search(r"reward_code TEXT UNIQUE", SCHEMA)
    assert "email TEXT UNIQUE NOT NULL" in SCHEMA
