"""Tiered category resolution.

Tiers run cheapest first and the first one with an answer wins:

1. keyword rules (user table, then global table) -> ``user-rule``/``global-rule``
2. heuristics, unless they only produced the default bucket -> ``heuristic``
3. generative fallback -> ``ai-deep``
4. nothing -> ``(DEFAULT_BUCKET, "unresolved")``

Each tier returns ``Resolution | None``. :meth:`ResolutionPipeline.resolve`
never raises: an exception inside any tier is logged and the record comes
back ``unresolved``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal

from . import heuristics
from .deep_categorize import DeepCategorization
from .logging_setup import get_logger
from .models import Resolution, TransactionRecord, UserContext
from .persistence import to_confidence
from .rules import RuleStore
from .taxonomy import DEFAULT_BUCKET

type DeepFallback = Callable[[str, Decimal, date], DeepCategorization | None]

# Records at or above this confidence are auto-categorized; below it they are
# queued for human review.
AUTO_ACCEPT_CONFIDENCE = 0.95

_RULE_CONFIDENCE = {"user": 1.0, "global": 0.95}

_logger = get_logger("fiscal_ledger.pipeline")


def _unresolved(explanation: str) -> Resolution:
    return Resolution(DEFAULT_BUCKET, "unresolved", 0.0, explanation)


class ResolutionPipeline:
    """Resolve one transaction into ``(label, source)``.

    Parameters
    ----------
    rules:
        Rule store for the rule tier; ``None`` skips the tier.
    fallback:
        Generative fallback callable ``(description, amount, date)``; ``None``
        skips the tier (e.g. for bulk jobs that must stay free).
    """

    def __init__(self, rules: RuleStore | None, *, fallback: DeepFallback | None = None) -> None:
        self._rules = rules
        self._fallback = fallback

    # ---- Tiers ---------------------------------------------------------------

    def _rule_tier(self, txn: TransactionRecord, ctx: UserContext | None) -> Resolution | None:
        if self._rules is None:
            return None
        match = self._rules.lookup(txn.description, txn.user_id)
        if match is None:
            return None
        label = heuristics.enforce_accounting_rules(match.label, txn.amount)
        return Resolution(
            label,
            "user-rule" if match.scope == "user" else "global-rule",
            _RULE_CONFIDENCE[match.scope],
            f"Matched {match.scope} rule {match.key}",
        )

    def _heuristic_tier(self, txn: TransactionRecord, ctx: UserContext | None) -> Resolution | None:
        result = heuristics.score(txn.description, txn.amount, txn.provider_category, ctx)
        if result.is_default:
            return None
        label = heuristics.enforce_accounting_rules(result.label, txn.amount)
        return Resolution(label, "heuristic", result.confidence, f"Heuristic: {result.reason}")

    def _deep_tier(self, txn: TransactionRecord, ctx: UserContext | None) -> Resolution | None:
        if self._fallback is None:
            return None
        deep = self._fallback(txn.description, txn.amount, txn.date)
        if deep is None:
            return None
        label = heuristics.enforce_accounting_rules(deep.label, txn.amount)
        return Resolution(label, "ai-deep", deep.confidence, deep.reasoning)

    # ---- Entry point ---------------------------------------------------------

    def resolve(self, txn: TransactionRecord, ctx: UserContext | None = None) -> Resolution:
        tiers = (self._rule_tier, self._heuristic_tier, self._deep_tier)
        try:
            for tier in tiers:
                result = tier(txn, ctx)
                if result is not None:
                    return result
        except Exception as e:  # noqa: BLE001 - per-record failures stay inside the pipeline
            _logger.warning(
                "pipeline:resolve_failed user_id=%s transaction_id=%s error_type=%s error=%s",
                txn.user_id,
                txn.id,
                type(e).__name__,
                e,
            )
            return _unresolved(f"Resolution failed: {type(e).__name__}")
        return _unresolved("No rule, heuristic or model answer")


def review_status_for(resolution: Resolution) -> str:
    if resolution.source == "unresolved" or resolution.confidence < AUTO_ACCEPT_CONFIDENCE:
        return "needs-review"
    return "auto-categorized"


def apply_resolution(record: TransactionRecord, resolution: Resolution) -> TransactionRecord:
    """Return ``record`` carrying ``resolution``'s label, source and review status."""

    return record.with_label(resolution.label).replace(
        category_source=resolution.source,
        confidence=to_confidence(resolution.confidence),
        explanation=resolution.explanation,
        review_status=review_status_for(resolution),
    )


__all__ = [
    "AUTO_ACCEPT_CONFIDENCE",
    "DeepFallback",
    "ResolutionPipeline",
    "apply_resolution",
    "review_status_for",
]
