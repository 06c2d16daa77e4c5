# ruff: noqa: I001
"""Ledger core tables: owners, accounts, transactions, keyword rules.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def _label_columns() -> list[sa.Column]:
    return [
        sa.Column("l0", sa.Text(), nullable=False),
        sa.Column("l1", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("l2", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("l3", sa.Text(), nullable=False, server_default=sa.text("''")),
    ]


def upgrade() -> None:
    op.create_table(
        "ledger_users",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("auto_sync", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )

    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), sa.ForeignKey("ledger_users.id"), nullable=False),
        sa.Column("item_id", sa.Text(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("sync_cursor", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_ledger_accounts_user_id", "ledger_accounts", ["user_id"])
    op.create_index("ix_ledger_accounts_item_id", "ledger_accounts", ["item_id"])

    op.create_table(
        "ledger_transactions",
        sa.Column("user_id", sa.Text(), sa.ForeignKey("ledger_users.id"), primary_key=True),
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("account_id", sa.Text(), sa.ForeignKey("ledger_accounts.id"), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("l0", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("l1", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("l2", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("l3", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("legacy_category", sa.Text(), nullable=True),
        sa.Column(
            "category_source",
            sa.Text(),
            nullable=False,
            server_default=sa.text("'unresolved'"),
        ),
        sa.Column("confidence", sa.Numeric(3, 2), nullable=True),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column(
            "review_status",
            sa.Text(),
            nullable=False,
            server_default=sa.text("'needs-review'"),
        ),
        sa.Column("provider_category", sa.JSON(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("categorized_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "category_source in ('user-rule','global-rule','heuristic','ai-deep','unresolved')",
            name="ck_ledger_tx_category_source",
        ),
        sa.CheckConstraint(
            "review_status in ('needs-review','auto-categorized','confirmed')",
            name="ck_ledger_tx_review_status",
        ),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_ledger_tx_confidence",
        ),
    )
    op.create_index("ix_ledger_transactions_account_id", "ledger_transactions", ["account_id"])
    op.create_index(
        "ix_ledger_tx_user_date_id", "ledger_transactions", ["user_id", "date", "id"]
    )

    op.create_table(
        "ledger_user_rules",
        sa.Column("user_id", sa.Text(), sa.ForeignKey("ledger_users.id"), primary_key=True),
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("keyword", sa.Text(), nullable=False),
        *_label_columns(),
        sa.Column("source", sa.Text(), nullable=False, server_default=sa.text("'user'")),
        *_timestamps(),
    )

    op.create_table(
        "ledger_global_rules",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("keyword", sa.Text(), nullable=False),
        *_label_columns(),
        sa.Column("source", sa.Text(), nullable=False, server_default=sa.text("'global_seed'")),
        *_timestamps(),
    )

    op.create_table(
        "ledger_contacts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Text(), sa.ForeignKey("ledger_users.id"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("default_l0", sa.Text(), nullable=True),
        sa.Column("default_l1", sa.Text(), nullable=True),
        sa.Column("default_l2", sa.Text(), nullable=True),
        sa.Column("default_l3", sa.Text(), nullable=True),
        sa.CheckConstraint("kind in ('tenant','vendor')", name="ck_ledger_contact_kind"),
    )
    op.create_index("ix_ledger_contacts_user_id", "ledger_contacts", ["user_id"])

    op.create_table(
        "ledger_category_mappings",
        sa.Column("legacy_key", sa.Text(), primary_key=True),
        *_label_columns(),
    )


def downgrade() -> None:
    op.drop_table("ledger_category_mappings")
    op.drop_index("ix_ledger_contacts_user_id", table_name="ledger_contacts")
    op.drop_table("ledger_contacts")
    op.drop_table("ledger_global_rules")
    op.drop_table("ledger_user_rules")
    op.drop_index("ix_ledger_tx_user_date_id", table_name="ledger_transactions")
    op.drop_index("ix_ledger_transactions_account_id", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_index("ix_ledger_accounts_item_id", table_name="ledger_accounts")
    op.drop_index("ix_ledger_accounts_user_id", table_name="ledger_accounts")
    op.drop_table("ledger_accounts")
    op.drop_table("ledger_users")
