from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Owners: ledger_users / ledger_accounts
# ---------------------------


class LedgerUser(Base):
    __tablename__ = "ledger_users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # When false, aggregator webhooks are acknowledged but never trigger a sync.
    auto_sync: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"

    # Provider-assigned account id (Plaid ``account_id``).
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("ledger_users.id"), nullable=False, index=True
    )
    item_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Opaque continuation token of the provider change feed. NULL means the
    # next sync is a full initial sync. Only advanced after a committed page.
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Core: ledger_transactions
# ---------------------------


class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"

    # Documents are addressed by owner + provider transaction id so that a
    # re-delivered record overwrites instead of duplicating.
    user_id: Mapped[str] = mapped_column(String, ForeignKey("ledger_users.id"), primary_key=True)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("ledger_accounts.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # l0 is intentionally unconstrained: historical rows may still carry
    # legacy values until the six-set normalization has run over them.
    l0: Mapped[str] = mapped_column(String, nullable=False, default="")
    l1: Mapped[str] = mapped_column(String, nullable=False, default="")
    l2: Mapped[str] = mapped_column(String, nullable=False, default="")
    l3: Mapped[str] = mapped_column(String, nullable=False, default="")
    # Pre-hierarchy "A > B > C" category string kept for legacy migrations.
    legacy_category: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_source: Mapped[str] = mapped_column(
        String, nullable=False, default="unresolved", server_default=text("'unresolved'")
    )
    confidence: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_status: Mapped[str] = mapped_column(
        String, nullable=False, default="needs-review", server_default=text("'needs-review'")
    )
    provider_category: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    categorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "category_source in ('user-rule','global-rule','heuristic','ai-deep','unresolved')",
            name="ck_ledger_tx_category_source",
        ),
        CheckConstraint(
            "review_status in ('needs-review','auto-categorized','confirmed')",
            name="ck_ledger_tx_review_status",
        ),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_ledger_tx_confidence",
        ),
        # Keyset pagination order used by the migration runner.
        Index("ix_ledger_tx_user_date_id", "user_id", "date", "id"),
    )


# ---------------------------
# Rules: ledger_user_rules / ledger_global_rules
# ---------------------------


class UserKeywordRule(Base):
    __tablename__ = "ledger_user_rules"

    user_id: Mapped[str] = mapped_column(String, ForeignKey("ledger_users.id"), primary_key=True)
    # Sanitized keyword; same input keyword always yields the same key.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    keyword: Mapped[str] = mapped_column(Text, nullable=False)
    l0: Mapped[str] = mapped_column(String, nullable=False)
    l1: Mapped[str] = mapped_column(String, nullable=False, default="")
    l2: Mapped[str] = mapped_column(String, nullable=False, default="")
    l3: Mapped[str] = mapped_column(String, nullable=False, default="")
    source: Mapped[str] = mapped_column(String, nullable=False, default="user")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class GlobalKeywordRule(Base):
    __tablename__ = "ledger_global_rules"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    keyword: Mapped[str] = mapped_column(Text, nullable=False)
    l0: Mapped[str] = mapped_column(String, nullable=False)
    l1: Mapped[str] = mapped_column(String, nullable=False, default="")
    l2: Mapped[str] = mapped_column(String, nullable=False, default="")
    l3: Mapped[str] = mapped_column(String, nullable=False, default="")
    # 'global_seed' for the static table, 'published:<user id>' for promoted rules.
    source: Mapped[str] = mapped_column(String, nullable=False, default="global_seed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Context: ledger_contacts / ledger_category_mappings
# ---------------------------


class LedgerContact(Base):
    __tablename__ = "ledger_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("ledger_users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    # Vendor default category; unused for tenants.
    default_l0: Mapped[str | None] = mapped_column(String, nullable=True)
    default_l1: Mapped[str | None] = mapped_column(String, nullable=True)
    default_l2: Mapped[str | None] = mapped_column(String, nullable=True)
    default_l3: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("kind in ('tenant','vendor')", name="ck_ledger_contact_kind"),
    )


class CategoryMapping(Base):
    __tablename__ = "ledger_category_mappings"

    # Legacy "Primary > Secondary > Sub" string as stored before the hierarchy.
    legacy_key: Mapped[str] = mapped_column(Text, primary_key=True)
    l0: Mapped[str] = mapped_column(String, nullable=False)
    l1: Mapped[str] = mapped_column(String, nullable=False, default="")
    l2: Mapped[str] = mapped_column(String, nullable=False, default="")
    l3: Mapped[str] = mapped_column(String, nullable=False, default="")


__all__ = [
    "Base",
    "CategoryMapping",
    "GlobalKeywordRule",
    "LedgerAccount",
    "LedgerContact",
    "LedgerTransaction",
    "LedgerUser",
    "UserKeywordRule",
]
