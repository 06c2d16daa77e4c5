"""Keyword rule store: per-user overrides and the shared global table.

Rules are keyed by :func:`sanitize_keyword`, so writing the same keyword
twice always lands on the same row (re-seeding and re-publishing are
idempotent). Lookups match by substring containment of the normalized
keyword in the normalized description, user rules first.

When several rules of one table match, the longest keyword wins and equal
lengths fall back to the rule key in ascending order.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_db.models.ledger import GlobalKeywordRule, LedgerUser, UserKeywordRule

from .errors import PublishNotAuthorized
from .logging_setup import get_logger
from .models import KeywordRule, RuleScope
from .taxonomy import CategoryLabel, normalize_hierarchy

_logger = get_logger("fiscal_ledger.rules")

UNKNOWN_VENDOR_KEY = "UNKNOWN_VENDOR"

_SLASHES_RE = re.compile(r"[/\\]")
_ILLEGAL_RE = re.compile(r"[#?]")
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def sanitize_keyword(text: str | None) -> str:
    """Deterministic rule key for ``text``.

    Upper-cased; ``/`` and ``\\`` become ``_``; ``#`` and ``?`` are dropped;
    remaining punctuation is dropped; whitespace runs become ``_``.
    """

    if not text or not text.strip():
        return UNKNOWN_VENDOR_KEY
    s = text.strip().upper()
    s = _SLASHES_RE.sub("_", s)
    s = _ILLEGAL_RE.sub("", s)
    s = _PUNCT_RE.sub("", s)
    s = _SPACE_RE.sub("_", s.strip())
    return s or UNKNOWN_VENDOR_KEY


def normalize_text(text: str | None) -> str:
    """Upper-case, trim and collapse internal whitespace."""

    return " ".join((text or "").split()).upper()


@dataclass(frozen=True, slots=True)
class RuleMatch:
    scope: RuleScope
    key: str
    keyword: str
    label: CategoryLabel


class PublishAuthorizer(Protocol):
    """Capability deciding who may promote a user's rules to the global table."""

    def check(self, source_user_id: str) -> None:
        """Raise :class:`PublishNotAuthorized` when publishing is not allowed."""
        ...


@dataclass(frozen=True, slots=True)
class AllowlistAuthorizer:
    """Authorize ``actor_id`` when it belongs to ``allowed``."""

    actor_id: str
    allowed: frozenset[str]

    def check(self, source_user_id: str) -> None:
        if self.actor_id not in self.allowed:
            raise PublishNotAuthorized(
                f"actor {self.actor_id!r} may not publish rules of {source_user_id!r}"
            )


def _row_label(row: UserKeywordRule | GlobalKeywordRule) -> CategoryLabel:
    return normalize_hierarchy(row.l0, row.l1, row.l2, row.l3, amount=-1)


def _best_match(
    candidates: Iterable[tuple[str, str, CategoryLabel]], description: str
) -> tuple[str, str, CategoryLabel] | None:
    best: tuple[str, str, CategoryLabel] | None = None
    for key, keyword, label in candidates:
        if not keyword or keyword not in description:
            continue
        if best is None or (-len(keyword), key) < (-len(best[1]), best[0]):
            best = (key, keyword, label)
    return best


class RuleStore:
    """Read/write access to the user and global keyword rule tables.

    Rule tables are read once per owner and cached for the lifetime of the
    store; writes through this object refresh the affected cache. One store
    is meant to live for one job run.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._global: list[tuple[str, str, CategoryLabel]] | None = None
        self._user: dict[str, list[tuple[str, str, CategoryLabel]]] = {}

    # ---- Reads ---------------------------------------------------------------

    def _global_rules(self) -> list[tuple[str, str, CategoryLabel]]:
        if self._global is None:
            rows = self._session.scalars(select(GlobalKeywordRule).order_by(GlobalKeywordRule.key))
            self._global = [(r.key, normalize_text(r.keyword), _row_label(r)) for r in rows]
        return self._global

    def _user_rules(self, user_id: str) -> list[tuple[str, str, CategoryLabel]]:
        cached = self._user.get(user_id)
        if cached is None:
            rows = self._session.scalars(
                select(UserKeywordRule)
                .where(UserKeywordRule.user_id == user_id)
                .order_by(UserKeywordRule.key)
            )
            cached = [(r.key, normalize_text(r.keyword), _row_label(r)) for r in rows]
            self._user[user_id] = cached
        return cached

    def lookup(self, description: str | None, user_id: str) -> RuleMatch | None:
        """Return the matching rule for ``description``, user rules first."""

        desc = normalize_text(description)
        if not desc:
            return None
        hit = _best_match(self._user_rules(user_id), desc)
        if hit is not None:
            return RuleMatch("user", hit[0], hit[1], hit[2])
        hit = _best_match(self._global_rules(), desc)
        if hit is not None:
            return RuleMatch("global", hit[0], hit[1], hit[2])
        return None

    def user_rules(self, user_id: str) -> list[KeywordRule]:
        rows = self._session.scalars(
            select(UserKeywordRule)
            .where(UserKeywordRule.user_id == user_id)
            .order_by(UserKeywordRule.key)
        )
        return [
            KeywordRule("user", r.user_id, r.key, r.keyword, _row_label(r), r.source) for r in rows
        ]

    # ---- Writes --------------------------------------------------------------

    def save_user_rule(
        self, user_id: str, keyword: str, label: CategoryLabel, *, source: str = "user"
    ) -> KeywordRule:
        """Create or overwrite the user's rule for ``keyword``."""

        key = sanitize_keyword(keyword)
        now = datetime.now(UTC)
        if self._session.get(LedgerUser, user_id) is None:
            self._session.add(LedgerUser(id=user_id))
        row = self._session.get(UserKeywordRule, (user_id, key))
        if row is None:
            row = UserKeywordRule(user_id=user_id, key=key, created_at=now)
            self._session.add(row)
        row.keyword = normalize_text(keyword)
        row.l0, row.l1, row.l2, row.l3 = label.l0, label.l1, label.l2, label.l3
        row.source = source
        row.updated_at = now
        self._session.commit()
        self._user.pop(user_id, None)
        _logger.info("rules:user_rule_saved user_id=%s key=%s", user_id, key)
        return KeywordRule("user", user_id, key, row.keyword, label, source)

    def publish(self, user_id: str, *, authorizer: PublishAuthorizer) -> int:
        """Copy every rule of ``user_id`` into the global table.

        Merge semantics: keyword and label fields overwrite, the global row's
        ``created_at`` survives. Returns the number of rules written.
        """

        authorizer.check(user_id)
        rules = self.user_rules(user_id)
        written = merge_global_rules(
            self._session,
            ((r.keyword, r.label) for r in rules),
            source=f"published:{user_id}",
        )
        self._session.commit()
        self._global = None
        _logger.info("rules:published user_id=%s written=%d", user_id, written)
        return written


def merge_global_rules(
    session: Session,
    entries: Iterable[tuple[str, CategoryLabel]],
    *,
    source: str,
) -> int:
    """Upsert ``(keyword, label)`` entries into the global table (no commit).

    Returns the number of entries written; entries sharing a sanitized key are
    written once, last one wins.
    """

    by_key: dict[str, tuple[str, CategoryLabel]] = {}
    for keyword, label in entries:
        by_key[sanitize_keyword(keyword)] = (normalize_text(keyword), label)

    now = datetime.now(UTC)
    for key, (keyword, label) in by_key.items():
        row = session.get(GlobalKeywordRule, key)
        if row is None:
            row = GlobalKeywordRule(key=key, created_at=now)
            session.add(row)
        row.keyword = keyword
        row.l0, row.l1, row.l2, row.l3 = label.l0, label.l1, label.l2, label.l3
        row.source = source
        row.updated_at = now
    return len(by_key)


def global_rule_keys(session: Session) -> Sequence[str]:
    return list(session.scalars(select(GlobalKeywordRule.key).order_by(GlobalKeywordRule.key)))


__all__ = [
    "AllowlistAuthorizer",
    "PublishAuthorizer",
    "RuleMatch",
    "RuleStore",
    "UNKNOWN_VENDOR_KEY",
    "global_rule_keys",
    "merge_global_rules",
    "normalize_text",
    "sanitize_keyword",
]
