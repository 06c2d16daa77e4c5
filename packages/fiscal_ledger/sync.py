"""Ingestion sync engine: pull the Plaid change feed into the ledger.

One call to :meth:`SyncEngine.sync_account` drains the feed for one account:

    IDLE -> FETCHING -> RESOLVING -> COMMITTING -> (next page | IDLE)

Any failure moves the engine to ``ERROR`` and propagates. Pages of one account
are handled strictly in order. The account cursor is written only after every
record write of the page committed, so a failed page is simply fetched again
on the next run; record writes are keyed upserts and re-applying them is
harmless.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import LedgerUser

from .config import RemovedPolicy
from .errors import AccountNotFound, CommitError, FeedError
from .logging_setup import get_logger
from .models import Resolution, TransactionRecord, UserContext
from .persistence import (
    StagedWrite,
    WriteBatch,
    accounts_for_item,
    cursor_guard,
    get_account,
    list_accounts,
    load_transactions,
    load_user_context,
    mark_removed,
    record_sync_error,
    save_cursor,
    upsert_transaction,
)
from .pipeline import ResolutionPipeline, apply_resolution
from .plaid import FeedPage, PlaidTransaction, TransactionFeed
from .pmap import p_map
from .taxonomy import DEFAULT_BUCKET

_logger = get_logger("fiscal_ledger.sync")

_CENT = Decimal("0.01")

_LABEL_FIELDS: tuple[str, ...] = (
    "l0",
    "l1",
    "l2",
    "l3",
    "category_source",
    "confidence",
    "explanation",
    "review_status",
)


class SyncState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    COMMITTING = "committing"
    ERROR = "error"


@dataclass(slots=True)
class SyncResult:
    """Counters of one account sync."""

    user_id: str
    account_id: str
    pages: int = 0
    added: int = 0
    modified: int = 0
    removed: int = 0
    skipped: int = 0
    preserved: int = 0
    unresolved: int = 0
    cursor: str | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def absorb(self, page: SyncResult) -> None:
        """Add the counters of one committed page."""

        self.added += page.added
        self.modified += page.modified
        self.removed += page.removed
        self.skipped += page.skipped
        self.preserved += page.preserved
        self.unresolved += page.unresolved

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "account_id": self.account_id,
            "pages": self.pages,
            "added": self.added,
            "modified": self.modified,
            "removed": self.removed,
            "skipped": self.skipped,
            "preserved": self.preserved,
            "unresolved": self.unresolved,
            "cursor": self.cursor,
            "error": self.error,
        }


def to_record(user_id: str, txn: PlaidTransaction) -> TransactionRecord:
    """Convert a feed transaction into a ledger record (inflow-positive amount)."""

    pfc = txn.personal_finance_category
    return TransactionRecord(
        id=txn.transaction_id,
        user_id=user_id,
        account_id=txn.account_id,
        amount=-txn.amount.quantize(_CENT, rounding=ROUND_HALF_UP),
        description=txn.name or txn.merchant_name or "",
        date=txn.date,
        merchant_name=txn.merchant_name,
        provider_category=pfc.model_dump(exclude_none=True) if pfc is not None else None,
    )


def _keep_confirmed(incoming: TransactionRecord, stored: TransactionRecord) -> TransactionRecord:
    return incoming.replace(**{name: getattr(stored, name) for name in _LABEL_FIELDS})


class SyncEngine:
    """Drain the change feed of one account at a time.

    Parameters
    ----------
    session_factory:
        Zero-argument callable returning a new ``Session``.
    feed:
        Anything exposing ``transactions_sync(access_token, cursor)``.
    pipeline:
        Resolution pipeline applied to every added or modified record.
    batch_ceiling:
        Maximum writes per committed group (at most the store limit).
    removed_policy:
        ``"soft"`` flags removed records ``is_deleted``; ``"hard"`` deletes them.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        feed: TransactionFeed,
        pipeline: ResolutionPipeline,
        *,
        batch_ceiling: int = 450,
        removed_policy: RemovedPolicy = "soft",
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self._pipeline = pipeline
        self._batch_ceiling = batch_ceiling
        self._hard_delete = removed_policy == "hard"
        self.state = SyncState.IDLE

    # ---- Page steps ----------------------------------------------------------

    def _resolve(self, record: TransactionRecord, ctx: UserContext) -> Resolution:
        try:
            return self._pipeline.resolve(record, ctx)
        except Exception as e:  # noqa: BLE001 - one bad record must not sink the page
            _logger.warning(
                "sync:resolve_failed user_id=%s transaction_id=%s error_type=%s",
                record.user_id,
                record.id,
                type(e).__name__,
            )
            return Resolution(DEFAULT_BUCKET, "unresolved", 0.0, f"Resolution failed: {type(e).__name__}")

    def _page_writes(
        self,
        session: Session,
        page: FeedPage,
        *,
        user_id: str,
        account_id: str,
        ctx: UserContext,
        result: SyncResult,
    ) -> list[StagedWrite]:
        changed: list[tuple[PlaidTransaction, bool]] = [(t, True) for t in page.added]
        changed += [(t, False) for t in page.modified]

        mine: list[tuple[PlaidTransaction, bool]] = []
        for txn, is_new in changed:
            if txn.account_id != account_id:
                result.skipped += 1
                continue
            mine.append((txn, is_new))

        stored = load_transactions(session, user_id, (t.transaction_id for t, _ in mine))
        writes: list[StagedWrite] = []
        for txn, is_new in mine:
            record = to_record(user_id, txn)
            previous = stored.get(record.id)
            if previous is not None and previous.review_status == "confirmed":
                record = _keep_confirmed(record, previous)
                result.preserved += 1
            else:
                resolution = self._resolve(record, ctx)
                record = apply_resolution(record, resolution)
                if resolution.source == "unresolved":
                    result.unresolved += 1
            writes.append(upsert_transaction(record))
            if is_new:
                result.added += 1
            else:
                result.modified += 1

        for gone in page.removed:
            if gone.account_id not in (None, account_id):
                result.skipped += 1
                continue
            writes.append(mark_removed(user_id, gone.transaction_id, hard=self._hard_delete))
            result.removed += 1
        return writes

    def _commit(
        self,
        batch: WriteBatch,
        *,
        user_id: str,
        account_id: str,
        page_index: int,
        cursor: str | None,
    ) -> None:
        try:
            batch.commit()
        except SQLAlchemyError as e:
            raise CommitError(
                f"commit failed for account {account_id!r} page {page_index}: {e}",
                owner_id=user_id,
                account_id=account_id,
                page_index=page_index,
                cursor=cursor,
            ) from e

    # ---- Entry point ---------------------------------------------------------

    def sync_account(
        self, user_id: str, account_id: str, *, result: SyncResult | None = None
    ) -> SyncResult:
        """Pull every pending page for ``account_id`` and store it.

        Counters only include committed pages. Pass ``result`` to keep them
        when the call raises: the error is recorded on it before propagating.

        Raises
        ------
        AccountNotFound
            The account does not exist for ``user_id`` or has no access token.
        FeedError
            The aggregator call failed; nothing of that page was written.
        CommitError
            A write group was rejected, or another worker moved the cursor;
            the stored cursor still points at a page not yet applied.
        """

        if result is None:
            result = SyncResult(user_id=user_id, account_id=account_id)
        session = self._session_factory()
        page_index = 0
        try:
            account = get_account(session, user_id, account_id)
            if not account.access_token:
                raise AccountNotFound(f"account {account_id!r} has no access token")
            access_token = account.access_token
            cursor = account.sync_cursor
            ctx = load_user_context(session, user_id)
            while True:
                self.state = SyncState.FETCHING
                page = self._feed.transactions_sync(access_token, cursor)

                self.state = SyncState.RESOLVING
                counts = SyncResult(user_id=user_id, account_id=account_id)
                writes = self._page_writes(
                    session, page, user_id=user_id, account_id=account_id, ctx=ctx, result=counts
                )

                self.state = SyncState.COMMITTING
                batch = WriteBatch(
                    session,
                    ceiling=self._batch_ceiling,
                    guard=cursor_guard(account_id, cursor),
                )
                for write in writes:
                    if batch.full:
                        self._commit(
                            batch,
                            user_id=user_id,
                            account_id=account_id,
                            page_index=page_index,
                            cursor=cursor,
                        )
                    batch.stage(write)
                self._commit(
                    batch, user_id=user_id, account_id=account_id, page_index=page_index, cursor=cursor
                )
                batch.stage(save_cursor(account_id, page.next_cursor, expected=cursor))
                self._commit(
                    batch, user_id=user_id, account_id=account_id, page_index=page_index, cursor=cursor
                )

                cursor = page.next_cursor
                result.absorb(counts)
                result.pages += 1
                result.cursor = cursor
                _logger.info(
                    "sync:page_committed user_id=%s account_id=%s page=%d writes=%d has_more=%s",
                    user_id,
                    account_id,
                    page_index,
                    len(writes),
                    page.has_more,
                )
                page_index += 1
                if not page.has_more:
                    break
        except (FeedError, CommitError) as e:
            self.state = SyncState.ERROR
            result.error = f"{type(e).__name__}: {e}"
            _logger.error(
                "sync:failed user_id=%s account_id=%s page=%d error_type=%s error=%s",
                user_id,
                account_id,
                page_index,
                type(e).__name__,
                e,
            )
            try:
                record_sync_error(session, account_id, str(e))
            except SQLAlchemyError as record_err:
                _logger.warning(
                    "sync:record_error_failed account_id=%s error=%s", account_id, record_err
                )
            raise
        except Exception as e:
            self.state = SyncState.ERROR
            result.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            session.close()

        self.state = SyncState.IDLE
        _logger.info(
            "sync:done user_id=%s account_id=%s pages=%d added=%d modified=%d removed=%d",
            user_id,
            account_id,
            result.pages,
            result.added,
            result.modified,
            result.removed,
        )
        return result


# ---- Fan-out -----------------------------------------------------------------


def sync_owners(
    targets: Iterable[tuple[str, str]],
    engine_factory: Callable[[], SyncEngine],
    *,
    concurrency: int = 1,
) -> list[SyncResult]:
    """Sync several ``(user_id, account_id)`` pairs with per-account isolation.

    Duplicate pairs are synced once. Each worker builds its own engine (and so
    its own sessions). A failure is recorded on that account's result, next
    to the counters of the pages committed before it.
    """

    unique = list(dict.fromkeys(targets))

    def _one(target: tuple[str, str]) -> SyncResult:
        user_id, account_id = target
        result = SyncResult(user_id=user_id, account_id=account_id)
        try:
            return engine_factory().sync_account(user_id, account_id, result=result)
        except Exception as e:  # noqa: BLE001 - isolate accounts from one another
            _logger.error(
                "sync:account_failed user_id=%s account_id=%s pages=%d error_type=%s",
                user_id,
                account_id,
                result.pages,
                type(e).__name__,
            )
            result.error = f"{type(e).__name__}: {e}"
            return result

    return p_map(unique, _one, concurrency=concurrency)


def handle_webhook(
    payload: Mapping[str, Any],
    *,
    session_factory: Callable[[], Session],
    engine_factory: Callable[[], SyncEngine],
    concurrency: int = 1,
) -> list[SyncResult]:
    """React to a Plaid webhook.

    Only ``TRANSACTIONS``/``SYNC_UPDATES_AVAILABLE`` triggers work: every
    account of the item whose owner enabled auto-sync is synced. Other
    webhooks are acknowledged and ignored.
    """

    webhook_type = str(payload.get("webhook_type") or "")
    webhook_code = str(payload.get("webhook_code") or "")
    item_id = payload.get("item_id")
    if webhook_type != "TRANSACTIONS" or webhook_code != "SYNC_UPDATES_AVAILABLE" or not item_id:
        _logger.info("sync:webhook_ignored type=%s code=%s", webhook_type, webhook_code)
        return []

    session = session_factory()
    try:
        targets: list[tuple[str, str]] = []
        for account in accounts_for_item(session, str(item_id)):
            owner = session.get(LedgerUser, account.user_id)
            if owner is None or not owner.auto_sync:
                continue
            targets.append((account.user_id, account.id))
    finally:
        session.close()

    _logger.info("sync:webhook item_id=%s accounts=%d", item_id, len(targets))
    return sync_owners(targets, engine_factory, concurrency=concurrency)


def account_targets(session: Session, user_id: str, account_ids: Sequence[str] = ()) -> list[tuple[str, str]]:
    """Pairs for ``user_id``: the given accounts, or every linked account."""

    if account_ids:
        return [(user_id, a) for a in account_ids]
    return [(user_id, a.id) for a in list_accounts(session, user_id)]


__all__ = [
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "account_targets",
    "handle_webhook",
    "sync_owners",
    "to_record",
]
