"""Store adapter over ``ledger_db``: keyed upserts, keyset reads, bounded batches.

The store is addressed the way the pipeline thinks about it: transactions by
``(user_id, provider id)``, pages by the stable ``(date, id)`` order, and
writes through :class:`WriteBatch`, which applies a bounded group of staged
operations inside one transaction.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import ColumnElement, and_, delete, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ledger_db.models.ledger import (
    LedgerAccount,
    LedgerContact,
    LedgerTransaction,
    LedgerUser,
)

from .config import STORE_BATCH_LIMIT
from .errors import AccountNotFound
from .models import TransactionRecord, UserContext
from .taxonomy import normalize_hierarchy

type StagedWrite = Callable[[Session], None]


# ---- Coercion helpers --------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def to_amount(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_confidence(raw: Any) -> Decimal | None:
    """Clamp into ``[0, 1]`` at the two-decimal precision the store keeps."""

    d = to_amount(raw)
    if d is None:
        return None
    return min(max(d, Decimal("0.00")), Decimal("1.00"))


# ---- Bounded write batches ---------------------------------------------------


class WriteBatch:
    """Staged writes applied and committed together.

    At most ``ceiling`` operations may be staged; callers commit when
    :attr:`full` turns true and again at the end of their page. A commit
    applies the operations in staging order and commits once; on failure the
    transaction is rolled back and the exception propagates. In ``dry_run``
    mode staged operations are counted and discarded.

    ``guard``, when given, runs inside every commit before the staged
    operations and aborts the whole group by raising; it does not count
    against the ceiling.
    """

    def __init__(
        self,
        session: Session,
        *,
        ceiling: int,
        dry_run: bool = False,
        guard: StagedWrite | None = None,
    ) -> None:
        if not 1 <= ceiling <= STORE_BATCH_LIMIT:
            raise ValueError(f"batch ceiling must be within [1, {STORE_BATCH_LIMIT}]")
        self._session = session
        self._ops: list[StagedWrite] = []
        self.ceiling = ceiling
        self.dry_run = dry_run
        self._guard = guard
        self.commits = 0
        self.committed_ops = 0

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def full(self) -> bool:
        return len(self._ops) >= self.ceiling

    def stage(self, op: StagedWrite) -> None:
        if self.full:
            raise RuntimeError("write batch is full; commit before staging more writes")
        self._ops.append(op)

    def commit(self) -> int:
        """Apply and commit staged writes; return how many were applied."""

        ops, self._ops = self._ops, []
        if not ops:
            return 0
        if self.dry_run:
            return len(ops)
        try:
            if self._guard is not None:
                self._guard(self._session)
            for op in ops:
                op(self._session)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        self.commits += 1
        self.committed_ops += len(ops)
        return len(ops)


# ---- Transactions ------------------------------------------------------------


def upsert_transaction(record: TransactionRecord) -> StagedWrite:
    """Return a write that creates or overwrites the document for ``record``.

    Keyed by ``(user_id, id)``: applying it twice leaves a single row with the
    same values.
    """

    def _write(session: Session) -> None:
        now = _utcnow()
        values: dict[str, Any] = {
            "account_id": record.account_id,
            "amount": record.amount,
            "description": record.description,
            "merchant_name": record.merchant_name,
            "date": record.date,
            "l0": record.l0,
            "l1": record.l1,
            "l2": record.l2,
            "l3": record.l3,
            "category_source": record.category_source,
            "confidence": record.confidence,
            "explanation": record.explanation,
            "review_status": record.review_status,
            "provider_category": (
                dict(record.provider_category) if record.provider_category is not None else None
            ),
            "is_deleted": False,
            "deleted_at": None,
        }
        row = session.get(LedgerTransaction, (record.user_id, record.id))
        if row is None:
            session.add(
                LedgerTransaction(
                    user_id=record.user_id,
                    id=record.id,
                    categorized_at=now,
                    created_at=now,
                    updated_at=now,
                    **values,
                )
            )
            return
        for key, value in values.items():
            setattr(row, key, value)
        row.updated_at = now

    return _write


def mark_removed(user_id: str, transaction_id: str, *, hard: bool) -> StagedWrite:
    """Return a write that soft-flags (or, with ``hard``, deletes) a transaction."""

    def _write(session: Session) -> None:
        where = (LedgerTransaction.user_id == user_id) & (LedgerTransaction.id == transaction_id)
        if hard:
            session.execute(delete(LedgerTransaction).where(where))
        else:
            now = _utcnow()
            session.execute(
                update(LedgerTransaction)
                .where(where)
                .values(is_deleted=True, deleted_at=now, updated_at=now)
            )

    return _write


def apply_changes(user_id: str, transaction_id: str, changes: dict[str, Any]) -> StagedWrite:
    """Return a write updating only ``changes`` on one transaction."""

    def _write(session: Session) -> None:
        now = _utcnow()
        values = dict(changes)
        values["updated_at"] = now
        if any(k in values for k in ("l0", "l1", "l2", "l3", "category_source")):
            values["categorized_at"] = now
        session.execute(
            update(LedgerTransaction)
            .where(
                (LedgerTransaction.user_id == user_id)
                & (LedgerTransaction.id == transaction_id)
            )
            .values(**values)
        )

    return _write


def load_transactions(
    session: Session, user_id: str, transaction_ids: Iterable[str]
) -> dict[str, TransactionRecord]:
    ids = list(dict.fromkeys(transaction_ids))
    if not ids:
        return {}
    stmt = select(LedgerTransaction).where(
        (LedgerTransaction.user_id == user_id) & (LedgerTransaction.id.in_(ids))
    )
    return {row.id: TransactionRecord.from_row(row) for row in session.scalars(stmt)}


def fetch_page(
    session: Session,
    owner_id: str,
    *,
    limit: int,
    after: tuple[date, str] | None = None,
    where: ColumnElement[bool] | None = None,
    include_deleted: bool = False,
) -> list[TransactionRecord]:
    """Read one page ordered by ``(date, id)``, starting strictly after ``after``."""

    tx = LedgerTransaction
    stmt = select(tx).where(tx.user_id == owner_id)
    if not include_deleted:
        stmt = stmt.where(tx.is_deleted.is_(False))
    if where is not None:
        stmt = stmt.where(where)
    if after is not None:
        last_date, last_id = after
        stmt = stmt.where(or_(tx.date > last_date, and_(tx.date == last_date, tx.id > last_id)))
    stmt = (
        stmt.order_by(tx.date, tx.id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return [TransactionRecord.from_row(row) for row in session.scalars(stmt)]


# ---- Owners and accounts -----------------------------------------------------


def list_owner_ids(session: Session) -> list[str]:
    return list(session.scalars(select(LedgerUser.id).order_by(LedgerUser.id)))


def list_accounts(session: Session, user_id: str) -> list[LedgerAccount]:
    stmt = select(LedgerAccount).where(LedgerAccount.user_id == user_id).order_by(LedgerAccount.id)
    return list(session.scalars(stmt))


def get_account(session: Session, user_id: str, account_id: str) -> LedgerAccount:
    account = session.get(LedgerAccount, account_id)
    if account is None or account.user_id != user_id:
        raise AccountNotFound(f"account {account_id!r} not found for user {user_id!r}")
    return account


def _cursor_is(expected: str | None) -> ColumnElement[bool]:
    if expected is None:
        return LedgerAccount.sync_cursor.is_(None)
    return LedgerAccount.sync_cursor == expected


def cursor_guard(account_id: str, expected: str | None) -> StagedWrite:
    """Return a check that fails while the stored cursor differs from ``expected``.

    Used as a :class:`WriteBatch` guard so a worker holding a stale cursor
    cannot write the records of a page another worker already moved past.
    """

    def _check(session: Session) -> None:
        stored = session.scalar(select(LedgerAccount.sync_cursor).where(LedgerAccount.id == account_id))
        if stored != expected:
            raise StaleDataError(
                f"cursor of account {account_id!r} moved to {stored!r}; expected {expected!r}"
            )

    return _check


def save_cursor(account_id: str, cursor: str | None, *, expected: str | None) -> StagedWrite:
    """Return the write that advances an account's cursor after a committed page.

    Compare-and-set: the cursor only moves from ``expected``. When another
    worker advanced it first the write raises ``StaleDataError`` and the
    surrounding batch rolls back.
    """

    def _write(session: Session) -> None:
        now = _utcnow()
        result = session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.id == account_id, _cursor_is(expected))
            .values(sync_cursor=cursor, last_synced_at=now, last_sync_error=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleDataError(f"cursor of account {account_id!r} moved since it was read")

    return _write


def link_accounts(
    session: Session,
    user_id: str,
    *,
    item_id: str,
    access_token: str,
    accounts: Iterable[tuple[str, str | None]],
) -> int:
    """Create or refresh ``(account_id, name)`` rows of a linked item and commit.

    A relinked account keeps its cursor; only the credentials change.
    """

    if session.get(LedgerUser, user_id) is None:
        session.add(LedgerUser(id=user_id))
    count = 0
    now = _utcnow()
    for account_id, name in accounts:
        row = session.get(LedgerAccount, account_id)
        if row is None:
            row = LedgerAccount(id=account_id, user_id=user_id, created_at=now)
            session.add(row)
        elif row.user_id != user_id:
            raise AccountNotFound(f"account {account_id!r} belongs to another user")
        row.item_id = item_id
        row.access_token = access_token
        row.name = name
        row.updated_at = now
        count += 1
    session.commit()
    return count


def record_sync_error(session: Session, account_id: str, message: str) -> None:
    session.execute(
        update(LedgerAccount)
        .where(LedgerAccount.id == account_id)
        .values(last_sync_error=message[:2000], updated_at=_utcnow())
    )
    session.commit()


def load_user_context(session: Session, user_id: str) -> UserContext:
    """Collect tenant names and vendor defaults for the heuristics."""

    tenants: list[str] = []
    vendors: dict[str, Any] = {}
    stmt = select(LedgerContact).where(LedgerContact.user_id == user_id).order_by(LedgerContact.id)
    for contact in session.scalars(stmt):
        name = " ".join(contact.name.split()).upper()
        if not name:
            continue
        if contact.kind == "tenant":
            tenants.append(name)
        elif contact.default_l0 or contact.default_l1:
            vendors[name] = normalize_hierarchy(
                contact.default_l0 or contact.default_l1,
                contact.default_l1,
                contact.default_l2,
                contact.default_l3,
                amount=-1,
            )
        else:
            vendors[name] = None
    return UserContext(user_id=user_id, tenant_names=tuple(tenants), vendors=vendors)


def accounts_for_item(session: Session, item_id: str) -> Sequence[LedgerAccount]:
    stmt = select(LedgerAccount).where(LedgerAccount.item_id == item_id).order_by(LedgerAccount.id)
    return list(session.scalars(stmt))


__all__ = [
    "WriteBatch",
    "accounts_for_item",
    "apply_changes",
    "cursor_guard",
    "fetch_page",
    "get_account",
    "link_accounts",
    "list_accounts",
    "list_owner_ids",
    "load_transactions",
    "load_user_context",
    "mark_removed",
    "record_sync_error",
    "save_cursor",
    "to_amount",
    "to_confidence",
    "upsert_transaction",
]
