# ruff: noqa: I001
from __future__ import annotations

from decimal import Decimal

import pytest

import fiscal_ledger.heuristics as heuristics_mod
from fiscal_ledger.heuristics import enforce_accounting_rules, score
from fiscal_ledger.models import UserContext
from fiscal_ledger.taxonomy import DEFAULT_BUCKET, CategoryLabel


def test_home_depot_hits_vendor_keyword_table() -> None:
    result = score("HOME DEPOT #1234", Decimal("-85.30"))
    assert result.label.path == "Operating Expenses > Office Expenses > Supplies"
    assert result.label.l0 == "OPERATING EXPENSE"
    assert result.reason == "vendor keyword: HOME DEPOT"
    assert not result.is_default


def test_internal_transfer_wins_over_everything() -> None:
    result = score("ONLINE BANKING TRANSFER TO CHK 1234 HOME DEPOT", -500)
    assert result.label == CategoryLabel("ASSET", "Transfers", "Internal Transfer")
    assert result.confidence == 1.0


def test_debt_payment_only_on_outflows() -> None:
    out = score("CHASE CREDIT CARD PAYMENT", -250)
    assert out.label.l0 == "LIABILITY"
    inflow = score("CHASE CREDIT CARD PAYMENT", 250)
    assert inflow.label.l0 != "LIABILITY"


def test_tenant_name_on_inflow_is_rental_income() -> None:
    ctx = UserContext(user_id="u1", tenant_names=("JANE DOE",))
    result = score("ZELLE FROM JANE DOE", 1200, None, ctx)
    assert result.label.l0 == "INCOME"
    assert result.label.l2 == "Rental Income"
    assert result.reason == "tenant match: JANE DOE"


def test_vendor_contact_uses_default_category() -> None:
    plumbing = CategoryLabel("OPERATING EXPENSE", "Property Operations (Rentals)", "Repairs")
    ctx = UserContext(user_id="u1", vendors={"ACME PLUMBING": plumbing})
    result = score("ACME PLUMBING LLC INV 22", -300, None, ctx)
    assert result.label == plumbing
    assert result.confidence == 0.9


def test_personal_keyword_table() -> None:
    result = score("NORDSTROM #0042 DALLAS", -80)
    assert result.label.l0 == "EQUITY"
    assert result.label.path == "Equity > Owner's Draw > Personal Expense"


def test_keywords_match_on_word_boundaries() -> None:
    # "ROSS" must not match inside "CROSSFIT".
    result = score("CROSSFIT GYM", -40)
    assert result.label.l0 != "EQUITY"


def test_provider_category_hint() -> None:
    result = score("UBER 063015 SF", -18, {"primary": "TRAVEL", "detailed": "TRAVEL_TAXIS_AND_RIDE_SHARES"})
    assert result.label.l3 == "Tolls & Parking"


def test_inflow_rent_is_income() -> None:
    result = score("MONTHLY RENT PAYMENT UNIT 4", 1500)
    assert result.label.l0 == "INCOME"


def test_unknown_description_returns_default_bucket() -> None:
    result = score("XQZ 88812", -12)
    assert result.is_default
    assert result.label == DEFAULT_BUCKET
    assert result.confidence == pytest.approx(0.1)


def test_score_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(*_a, **_kw):
        raise RuntimeError("broken table")

    monkeypatch.setattr(heuristics_mod, "_transfer_or_payment", _boom)
    result = score("HOME DEPOT", -10)
    assert result.label == DEFAULT_BUCKET


def test_enforce_accounting_rules_relabels_inflow_expenses() -> None:
    supplies = CategoryLabel("OPERATING EXPENSE", "Operating Expenses", "Office Expenses", "Supplies")
    assert enforce_accounting_rules(supplies, -5) == supplies
    relabeled = enforce_accounting_rules(supplies, 5)
    assert relabeled.l0 == "INCOME"
    assert relabeled.l3 == "Supplies"
    assert enforce_accounting_rules(DEFAULT_BUCKET, 5) == DEFAULT_BUCKET
