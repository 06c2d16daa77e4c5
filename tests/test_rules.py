# ruff: noqa: I001
from __future__ import annotations

import pytest
from sqlalchemy import func, select

from ledger_db.models.ledger import GlobalKeywordRule
from fiscal_ledger.errors import PublishNotAuthorized
from fiscal_ledger.ingest.seed_rules import default_seed_groups, seed_global_rules
from fiscal_ledger.rules import (
    AllowlistAuthorizer,
    RuleStore,
    global_rule_keys,
    merge_global_rules,
    sanitize_keyword,
)
from fiscal_ledger.taxonomy import CategoryLabel, label_from_primary

from tests.helpers.db import add_user

SUPPLIES = label_from_primary("Operating Expenses", "Office Expenses", "Supplies", amount=-1)
REPAIRS = CategoryLabel("OPERATING EXPENSE", "Property Operations (Rentals)", "Repairs")


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Home Depot", "HOME_DEPOT"),
        ("  trip.com/booking ", "TRIPCOM_BOOKING"),
        ("AT&T #55?", "ATT_55"),
        ("a\\b", "A_B"),
        ("", "UNKNOWN_VENDOR"),
        (None, "UNKNOWN_VENDOR"),
        ("##", "UNKNOWN_VENDOR"),
    ],
)
def test_sanitize_keyword(text, expected) -> None:
    assert sanitize_keyword(text) == expected


def test_user_rule_beats_global_rule(session) -> None:
    merge_global_rules(session, [("HOME DEPOT", SUPPLIES)], source="global_seed")
    session.commit()
    store = RuleStore(session)
    store.save_user_rule("u1", "home depot", REPAIRS)

    match = store.lookup("HOME DEPOT #1234", "u1")
    assert match is not None
    assert match.scope == "user"
    assert match.label == REPAIRS

    other = store.lookup("HOME DEPOT #1234", "u2")
    assert other is not None
    assert other.scope == "global"
    assert other.label == SUPPLIES


def test_lookup_normalizes_case_and_whitespace(session) -> None:
    store = RuleStore(session)
    store.save_user_rule("u1", "  acme   plumbing ", REPAIRS)
    assert store.lookup("pymt acme plumbing llc", "u1") is not None
    assert store.lookup("", "u1") is None
    assert store.lookup("ACMEPLUMBING", "u1") is None


def test_longest_keyword_wins_within_a_table(session) -> None:
    fuel = label_from_primary("Operating Expenses", "Vehicle & Travel", "Fuel", amount=-1)
    merge_global_rules(session, [("SHELL", fuel), ("SHELL OIL CHANGE", REPAIRS)], source="global_seed")
    session.commit()
    match = RuleStore(session).lookup("SHELL OIL CHANGE 55", "u1")
    assert match is not None
    assert match.key == "SHELL_OIL_CHANGE"


def test_publish_twice_reports_same_count_without_duplicates(session) -> None:
    add_user(session, "u1")
    store = RuleStore(session)
    for i in range(10):
        store.save_user_rule("u1", f"VENDOR {i}", SUPPLIES)
    auth = AllowlistAuthorizer(actor_id="ops", allowed=frozenset({"ops"}))

    assert store.publish("u1", authorizer=auth) == 10
    assert store.publish("u1", authorizer=auth) == 10

    keys = global_rule_keys(session)
    assert len(keys) == 10
    assert len(set(keys)) == 10
    assert store.lookup("PAID VENDOR 3 TODAY", "someone-else").scope == "global"


def test_publish_keeps_created_at_and_overwrites_label(session) -> None:
    store = RuleStore(session)
    store.save_user_rule("u1", "ACME", SUPPLIES)
    auth = AllowlistAuthorizer(actor_id="ops", allowed=frozenset({"ops"}))
    store.publish("u1", authorizer=auth)
    session.expire_all()
    created = session.get(GlobalKeywordRule, "ACME").created_at

    store.save_user_rule("u1", "ACME", REPAIRS)
    store.publish("u1", authorizer=auth)
    session.expire_all()
    row = session.get(GlobalKeywordRule, "ACME")
    assert row.created_at == created
    assert (row.l1, row.l2) == (REPAIRS.l1, REPAIRS.l2)
    assert row.source == "published:u1"


def test_unauthorized_publish_writes_nothing(session) -> None:
    store = RuleStore(session)
    store.save_user_rule("u1", "ACME", SUPPLIES)
    with pytest.raises(PublishNotAuthorized):
        store.publish("u1", authorizer=AllowlistAuthorizer(actor_id="mallory", allowed=frozenset({"ops"})))
    assert global_rule_keys(session) == []


def test_seed_global_rules_is_idempotent(session) -> None:
    groups = default_seed_groups()
    first = seed_global_rules(session, groups)
    second = seed_global_rules(session, groups)
    assert first == second
    count = session.scalar(select(func.count()).select_from(GlobalKeywordRule))
    assert count == first
    match = RuleStore(session).lookup("HOME DEPOT #1234", "u1")
    assert match is not None
    assert match.label.path == "Operating Expenses > Office Expenses > Supplies"
