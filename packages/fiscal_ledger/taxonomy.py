"""Four-level category hierarchy and the six-set L0 invariant.

Every label the pipeline produces has an ``l0`` drawn from the six canonical
values below. Legacy or freeform L0 strings found in stored data are mapped
into the six-set with :func:`normalize_l0`, which is total: any input maps to
a member, and canonical inputs map to themselves.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from functools import cache
from pathlib import Path
from typing import Any

_SEEDS_DIR = Path(__file__).resolve().parent / "ingest" / "seeds"
_VOCABULARY_FILE = _SEEDS_DIR / "category_vocabulary.v1.json"


class L0(StrEnum):
    INCOME = "INCOME"
    OPERATING_EXPENSE = "OPERATING EXPENSE"
    EXPENSE = "EXPENSE"
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"


SIX_SET: frozenset[str] = frozenset(m.value for m in L0)

# Substring synonyms, checked in order after the exact matches.
_CONTAINS_SYNONYMS: tuple[tuple[str, L0], ...] = (
    ("operating", L0.OPERATING_EXPENSE),
    ("income", L0.INCOME),
    ("asset", L0.ASSET),
    ("liability", L0.LIABILITY),
    ("equity", L0.EQUITY),
)


@dataclass(frozen=True, slots=True)
class CategoryLabel:
    """A position in the hierarchy: ``l0 > l1 > l2 > l3``.

    ``l0`` must be a six-set member; lower levels may be empty but never
    ``None``.
    """

    l0: str
    l1: str = ""
    l2: str = ""
    l3: str = ""

    def __post_init__(self) -> None:
        if self.l0 not in SIX_SET:
            raise ValueError(f"l0 must be one of the six-set, got {self.l0!r}")
        # Store enum members as their plain string value.
        object.__setattr__(self, "l0", str(self.l0))
        for name in ("l1", "l2", "l3"):
            if not isinstance(getattr(self, name), str):
                raise TypeError(f"{name} must be a string")

    @property
    def path(self) -> str:
        """``"l1 > l2 > l3"`` without empty levels."""

        return " > ".join(p for p in (self.l1, self.l2, self.l3) if p)

    def as_columns(self) -> dict[str, str]:
        return {"l0": str(self.l0), "l1": self.l1, "l2": self.l2, "l3": self.l3}


# Label of last resort: every tier failed or the heuristics found nothing.
DEFAULT_BUCKET = CategoryLabel(L0.OPERATING_EXPENSE.value, "Needs Review")


def _sign_inference(amount: Decimal | float | int | None) -> L0:
    if amount is not None and amount < 0:
        return L0.OPERATING_EXPENSE
    return L0.INCOME


def normalize_l0(raw: Any, amount: Decimal | float | int | None) -> L0:
    """Map any stored L0 value into the six-set.

    Rules, in order: empty -> sign of ``amount`` (negative is
    ``OPERATING EXPENSE``, otherwise ``INCOME``); case-insensitive exact
    match; synonyms (``income``, ``expense``/``expenses``, then values
    containing ``operating``, ``income``, ``asset``, ``liability``,
    ``equity``); anything else -> sign of ``amount``.
    """

    text = "" if raw is None else str(raw).strip()
    if not text:
        return _sign_inference(amount)

    upper = text.upper()
    if upper in SIX_SET:
        return L0(upper)

    lower = text.lower()
    if lower == "income":
        return L0.INCOME
    if lower in ("expense", "expenses"):
        return L0.OPERATING_EXPENSE
    for needle, member in _CONTAINS_SYNONYMS:
        if needle in lower:
            return member
    return _sign_inference(amount)


def _level(v: Any) -> str:
    return "" if v is None else str(v).strip()


def normalize_hierarchy(
    l0: Any,
    l1: Any = None,
    l2: Any = None,
    l3: Any = None,
    *,
    amount: Decimal | float | int | None = None,
) -> CategoryLabel:
    """Coerce a loosely typed hierarchy into a :class:`CategoryLabel`."""

    return CategoryLabel(normalize_l0(l0, amount).value, _level(l1), _level(l2), _level(l3))


def label_from_primary(
    primary: str,
    secondary: str = "",
    sub: str = "",
    *,
    amount: Decimal | float | int | None = None,
) -> CategoryLabel:
    """Build a label from a rule's ``primary/secondary/sub`` triple.

    The primary name (e.g. ``"Operating Expenses"``) is kept as ``l1`` and also
    decides ``l0``.
    """

    return CategoryLabel(
        normalize_l0(primary, amount).value, _level(primary), _level(secondary), _level(sub)
    )


def parse_legacy_path(value: str) -> tuple[str, str, str]:
    """Split a legacy ``"A > B > C"`` category string into three levels."""

    parts = [p.strip() for p in value.split(">")]
    parts = [p for p in parts if p][:3]
    while len(parts) < 3:
        parts.append("")
    return parts[0], parts[1], parts[2]


# ---- Published vocabulary ----------------------------------------------------


@cache
def load_vocabulary() -> dict[str, dict[str, tuple[str, ...]]]:
    """Return the published per-L0 vocabulary ``{l0: {l1: (l2, ...)}}``."""

    with _VOCABULARY_FILE.open("r", encoding="utf-8") as f:
        data = json.load(f)
    out: dict[str, dict[str, tuple[str, ...]]] = {}
    for l0, groups in data.items():
        if l0 not in SIX_SET:
            raise ValueError(f"vocabulary L0 outside the six-set: {l0!r}")
        out[l0] = {l1: tuple(items) for l1, items in groups.items()}
    return out


def is_known_l1(l0: str, l1: str) -> bool:
    return l1 in load_vocabulary().get(l0, {})


__all__ = [
    "CategoryLabel",
    "DEFAULT_BUCKET",
    "L0",
    "SIX_SET",
    "is_known_l1",
    "label_from_primary",
    "load_vocabulary",
    "normalize_hierarchy",
    "normalize_l0",
    "parse_legacy_path",
]
