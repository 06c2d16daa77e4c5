"""Deterministic heuristic scorer: the last free tier before the model.

:func:`score` walks a fixed list of pattern tiers and returns the first hit.
It never raises; on total ambiguity it returns :data:`DEFAULT_BUCKET` with a
low confidence so the caller knows to escalate.

Amounts are signed from the owner's point of view: positive is money in,
negative is money out.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from decimal import Decimal
from functools import cache
from typing import Any, NamedTuple

from .ingest.seed_rules import SeedGroup, default_seed_groups
from .logging_setup import get_logger
from .models import UserContext
from .taxonomy import DEFAULT_BUCKET, L0, CategoryLabel

_logger = get_logger("fiscal_ledger.heuristics")

DEFAULT_CONFIDENCE = 0.1

# Same punctuation set the descriptions are cleaned with before matching.
_PUNCT_RE = re.compile(r"[.,/#!$%^&*;:{}=\-_`~()]")

_TRANSFER_KEYWORDS: tuple[str, ...] = (
    "ONLINE BANKING TRANSFER",
    "TRANSFER TO CHK",
    "TRANSFER FROM CHK",
    "INTERNAL TRANSFER",
)
_DEBT_PAYMENT_KEYWORDS: tuple[str, ...] = (
    "PAYMENT - THANK YOU",
    "PAYMENT RECEIVED",
    "CREDIT CARD",
    "LOAN",
    "MORTGAGE",
)

_TRANSFER = CategoryLabel(L0.ASSET, "Transfers", "Internal Transfer")
_DEBT_PAYMENT = CategoryLabel(L0.LIABILITY, "Liabilities", "Loan/Card Payment")
_TENANT_RENT = CategoryLabel(L0.INCOME, "Income", "Rental Income", "Residential Rent")
_PERSONAL = CategoryLabel(L0.EQUITY, "Equity", "Owner's Draw", "Personal Expense")


class HeuristicResult(NamedTuple):
    label: CategoryLabel
    confidence: float
    reason: str

    @property
    def is_default(self) -> bool:
        return self.label == DEFAULT_BUCKET


class _KeywordEntry(NamedTuple):
    keyword: str
    pattern: re.Pattern[str]
    label: CategoryLabel


def _clean(text: str) -> str:
    return " ".join(_PUNCT_RE.sub(" ", text.upper()).split())


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    tokens = _clean(keyword).split() or [keyword.upper()]
    body = r"\s+".join(re.escape(t) for t in tokens)
    return re.compile(rf"(?<![A-Z0-9]){body}(?![A-Z0-9])")


def build_keyword_table(groups: Sequence[SeedGroup], *, kind: str) -> tuple[_KeywordEntry, ...]:
    entries: list[_KeywordEntry] = []
    for group in groups:
        if group.kind != kind:
            continue
        label = _PERSONAL if kind == "personal" else group.label
        for kw in group.keywords:
            entries.append(_KeywordEntry(kw, _keyword_pattern(kw), label))
    # Longer keywords first so "AMERICAN AIR" is tried before "AIR"-like fragments.
    entries.sort(key=lambda e: (-len(e.keyword), e.keyword))
    return tuple(entries)


@cache
def _default_tables() -> tuple[tuple[_KeywordEntry, ...], tuple[_KeywordEntry, ...]]:
    groups = default_seed_groups()
    return build_keyword_table(groups, kind="vendor"), build_keyword_table(groups, kind="personal")


def _first_keyword(
    table: Sequence[_KeywordEntry], cleaned: str
) -> _KeywordEntry | None:
    for entry in table:
        if entry.pattern.search(cleaned):
            return entry
    return None


# ---- Tiers -------------------------------------------------------------------


def _transfer_or_payment(desc: str, outflow: bool) -> HeuristicResult | None:
    if any(k in desc for k in _TRANSFER_KEYWORDS):
        return HeuristicResult(_TRANSFER, 1.0, "internal transfer keyword")
    if outflow and any(k in desc for k in _DEBT_PAYMENT_KEYWORDS):
        return HeuristicResult(_DEBT_PAYMENT, 0.95, "debt payment keyword")
    return None


def _known_contact(desc: str, inflow: bool, ctx: UserContext | None) -> HeuristicResult | None:
    if ctx is None:
        return None
    if inflow:
        for tenant in ctx.tenant_names:
            if tenant and tenant in desc:
                label = CategoryLabel(
                    L0.INCOME, "Income", ctx.default_income_sub or "Rental Income", "Residential Rent"
                )
                return HeuristicResult(label, 0.95, f"tenant match: {tenant}")
    for vendor, label in sorted(ctx.vendors.items(), key=lambda kv: (-len(kv[0]), kv[0])):
        if vendor and label is not None and vendor in desc:
            return HeuristicResult(label, 0.9, f"vendor match: {vendor}")
    return None


def _provider_hint(
    desc: str, inflow: bool, raw_provider_category: Mapping[str, Any] | None
) -> HeuristicResult | None:
    if inflow:
        if "RENT" in desc or "LEASE" in desc:
            return HeuristicResult(
                CategoryLabel(L0.INCOME, "Income", "Rental Income", "Residential/Commercial Rent"),
                1.0,
                "inflow mentioning rent",
            )
        if "DEPOSIT" in desc and "REFUND" not in desc:
            return HeuristicResult(
                CategoryLabel(L0.INCOME, "Income", "Rental Income", "Security Deposit"),
                0.9,
                "inflow deposit",
            )
        if "INTEREST" in desc:
            return HeuristicResult(
                CategoryLabel(L0.INCOME, "Income", "Other Income", "Interest Income"),
                1.0,
                "inflow interest",
            )
        if "REFUND" in desc or "RETURN" in desc:
            return HeuristicResult(
                CategoryLabel(L0.INCOME, "Income", "Uncategorized", "Refunds/Credits"),
                0.8,
                "inflow refund",
            )

    primary = str((raw_provider_category or {}).get("primary") or "").upper()
    detailed = str((raw_provider_category or {}).get("detailed") or "").upper()

    if not inflow and primary:
        if primary == "FOOD_AND_DRINK":
            return HeuristicResult(
                CategoryLabel(
                    L0.OPERATING_EXPENSE, "Operating Expenses", "Meals & Entertainment", "Business Meals"
                ),
                0.8,
                "provider category FOOD_AND_DRINK",
            )
        if primary in ("PERSONAL_CARE", "GENERAL_MERCHANDISE") and any(
            k in detailed for k in ("CLOTHING", "BEAUTY", "GYM", "SPORTING")
        ):
            return HeuristicResult(_PERSONAL, 0.9, f"provider category {primary}")
        if primary == "TRAVEL":
            if any(k in detailed for k in ("TAXI", "PARKING", "TOLLS")):
                sub = "Tolls & Parking"
            elif "GAS" in detailed:
                sub = "Fuel"
            else:
                sub = "Travel & Lodging"
            return HeuristicResult(
                CategoryLabel(L0.OPERATING_EXPENSE, "Operating Expenses", "Vehicle & Travel", sub),
                0.9,
                "provider category TRAVEL",
            )
        if primary == "SERVICE" and ("INTERNET" in detailed or "TELEPHONE" in detailed):
            return HeuristicResult(
                CategoryLabel(
                    L0.OPERATING_EXPENSE,
                    "Operating Expenses",
                    "General & Administrative",
                    "Telephone & Internet",
                ),
                0.9,
                "provider category SERVICE",
            )
        if primary == "RENT_AND_UTILITIES" or (primary == "SERVICE" and "UTILITIES" in detailed):
            return HeuristicResult(
                CategoryLabel(
                    L0.OPERATING_EXPENSE,
                    "Operating Expenses",
                    "General & Administrative",
                    "Rent & Utilities",
                ),
                0.9,
                f"provider category {primary}",
            )
        if primary == "BANK_FEES":
            return HeuristicResult(
                CategoryLabel(
                    L0.OPERATING_EXPENSE,
                    "Office & Administrative (Business)",
                    "Bank Charges / Service Fees",
                ),
                0.85,
                "provider category BANK_FEES",
            )
        if primary == "LOAN_PAYMENTS":
            return HeuristicResult(_DEBT_PAYMENT, 0.85, "provider category LOAN_PAYMENTS")
    if primary in ("TRANSFER_IN", "TRANSFER_OUT"):
        return HeuristicResult(_TRANSFER, 0.8, f"provider category {primary}")

    if not inflow and ("RENT" in desc or "LEASE" in desc):
        return HeuristicResult(
            CategoryLabel(L0.OPERATING_EXPENSE, "Operating Expenses", "Rent & Lease", "Rent Expense"),
            0.9,
            "outflow mentioning rent",
        )
    return None


def _score(
    description: str | None,
    amount: Decimal | float | int | None,
    raw_provider_category: Mapping[str, Any] | None,
    user_context: UserContext | None,
) -> HeuristicResult:
    desc = " ".join((description or "").upper().split())
    cleaned = _clean(desc)
    value = amount if amount is not None else 0
    inflow = value > 0
    outflow = not inflow

    hit = _transfer_or_payment(desc, outflow)
    if hit is None:
        hit = _known_contact(desc, inflow, user_context)
    if hit is None and outflow:
        vendor_table, personal_table = _default_tables()
        entry = _first_keyword(vendor_table, cleaned)
        if entry is not None:
            hit = HeuristicResult(entry.label, 0.85, f"vendor keyword: {entry.keyword}")
        else:
            entry = _first_keyword(personal_table, cleaned)
            if entry is not None:
                hit = HeuristicResult(entry.label, 0.85, f"personal keyword: {entry.keyword}")
    if hit is None:
        hit = _provider_hint(desc, inflow, raw_provider_category)
    if hit is None:
        hit = HeuristicResult(DEFAULT_BUCKET, DEFAULT_CONFIDENCE, "no heuristic matched")
    return hit


def score(
    description: str | None,
    amount: Decimal | float | int | None,
    raw_provider_category: Mapping[str, Any] | None = None,
    user_context: UserContext | None = None,
) -> HeuristicResult:
    """Best-guess label and confidence for one transaction.

    Parameters
    ----------
    description:
        Raw merchant/memo string as received from the provider.
    amount:
        Signed amount; positive is an inflow.
    raw_provider_category:
        Provider category hint (Plaid ``personal_finance_category`` mapping
        with ``primary``/``detailed``), when available.
    user_context:
        Owner's tenants and vendors.

    Returns
    -------
    HeuristicResult
        ``(label, confidence, reason)``. The default bucket signals that no
        pattern applied.
    """

    try:
        return _score(description, amount, raw_provider_category, user_context)
    except Exception as e:  # noqa: BLE001 - scorer must stay total
        _logger.warning("heuristics:score_failed error=%s", e)
        return HeuristicResult(DEFAULT_BUCKET, DEFAULT_CONFIDENCE, "heuristic scoring failed")


def enforce_accounting_rules(label: CategoryLabel, amount: Decimal | float | int | None) -> CategoryLabel:
    """Re-label inflows that landed under an expense L0 as income."""

    if amount is None or amount <= 0 or label == DEFAULT_BUCKET:
        return label
    if label.l0 not in (L0.OPERATING_EXPENSE, L0.EXPENSE):
        return label
    if any("Rent" in part or "Lease" in part for part in (label.l2, label.l3)):
        return CategoryLabel(L0.INCOME, "Income", "Rental Income", "Residential Rent")
    return CategoryLabel(L0.INCOME, "Income", "Uncategorized Income", label.l3)


__all__ = [
    "DEFAULT_CONFIDENCE",
    "HeuristicResult",
    "build_keyword_table",
    "enforce_accounting_rules",
    "score",
]
