"""Typed records flowing through the ledger pipeline.

Rows coming out of the store and payloads coming from the aggregator are
coerced into these records at the adapter boundary; the pipeline never
passes loosely typed mappings around.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Literal

from .taxonomy import SIX_SET, CategoryLabel

type ResolutionSource = Literal["user-rule", "global-rule", "heuristic", "ai-deep", "unresolved"]
type ReviewStatus = Literal["needs-review", "auto-categorized", "confirmed"]
type RuleScope = Literal["user", "global"]

RESOLUTION_SOURCES: tuple[str, ...] = (
    "user-rule",
    "global-rule",
    "heuristic",
    "ai-deep",
    "unresolved",
)

# Columns a migration transform may rewrite; everything else is identity or
# provider data.
MUTABLE_FIELDS: tuple[str, ...] = (
    "l0",
    "l1",
    "l2",
    "l3",
    "category_source",
    "confidence",
    "explanation",
    "review_status",
)


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """A stored transaction, keyed by ``(user_id, id)``.

    ``l0`` to ``l3`` hold the stored values verbatim, so ``l0`` may still be a
    legacy string until the six-set normalization has run.
    """

    id: str
    user_id: str
    account_id: str
    amount: Decimal
    description: str
    date: date
    merchant_name: str | None = None
    l0: str = ""
    l1: str = ""
    l2: str = ""
    l3: str = ""
    legacy_category: str | None = None
    category_source: str = "unresolved"
    confidence: Decimal | None = None
    explanation: str | None = None
    review_status: str = "needs-review"
    provider_category: Mapping[str, Any] | None = None
    is_deleted: bool = False

    @property
    def label(self) -> CategoryLabel | None:
        """The stored label when its ``l0`` is canonical, else ``None``."""

        if self.l0 not in SIX_SET:
            return None
        return CategoryLabel(self.l0, self.l1, self.l2, self.l3)

    def with_label(self, label: CategoryLabel) -> TransactionRecord:
        return dataclasses.replace(self, **label.as_columns())

    def replace(self, **changes: Any) -> TransactionRecord:
        return dataclasses.replace(self, **changes)

    def changed_fields(self, other: TransactionRecord) -> dict[str, Any]:
        """Return ``{field: new_value}`` for mutable fields differing in ``other``."""

        out: dict[str, Any] = {}
        for name in MUTABLE_FIELDS:
            new = getattr(other, name)
            if getattr(self, name) != new:
                out[name] = new
        return out

    @classmethod
    def from_row(cls, row: Any) -> TransactionRecord:
        """Snapshot a ``ledger_db`` ``LedgerTransaction`` row."""

        return cls(
            id=row.id,
            user_id=row.user_id,
            account_id=row.account_id,
            amount=Decimal(row.amount),
            description=row.description or "",
            date=row.date,
            merchant_name=row.merchant_name,
            l0=row.l0 or "",
            l1=row.l1 or "",
            l2=row.l2 or "",
            l3=row.l3 or "",
            legacy_category=row.legacy_category,
            category_source=row.category_source,
            confidence=Decimal(row.confidence) if row.confidence is not None else None,
            explanation=row.explanation,
            review_status=row.review_status,
            provider_category=row.provider_category,
            is_deleted=bool(row.is_deleted),
        )


@dataclass(frozen=True, slots=True)
class KeywordRule:
    scope: RuleScope
    owner_id: str | None
    key: str
    keyword: str
    label: CategoryLabel
    source: str


@dataclass(frozen=True, slots=True)
class UserContext:
    """Owner facts the heuristics consult: tenant names and known vendors."""

    user_id: str
    tenant_names: tuple[str, ...] = ()
    vendors: Mapping[str, CategoryLabel | None] = field(default_factory=dict)
    default_income_sub: str = "Rental Income"


@dataclass(frozen=True, slots=True)
class Resolution:
    label: CategoryLabel
    source: ResolutionSource
    confidence: float
    explanation: str


@dataclass(slots=True)
class RunStats:
    """Per-owner counters of one migration or repair invocation."""

    owner_id: str
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "scanned": self.scanned,
            "updated": self.updated,
            "skipped": self.skipped,
            "errored": self.errored,
            "error": self.error,
        }


__all__ = [
    "KeywordRule",
    "MUTABLE_FIELDS",
    "RESOLUTION_SOURCES",
    "Resolution",
    "ResolutionSource",
    "ReviewStatus",
    "RuleScope",
    "RunStats",
    "TransactionRecord",
    "UserContext",
]
