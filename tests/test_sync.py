# ruff: noqa: I001
from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ledger_db.models.ledger import LedgerAccount, LedgerTransaction
from fiscal_ledger.errors import CommitError, FeedError
from fiscal_ledger.models import Resolution
from fiscal_ledger.persistence import WriteBatch, save_cursor
from fiscal_ledger.pipeline import ResolutionPipeline
from fiscal_ledger.sync import SyncEngine, SyncResult, SyncState, handle_webhook, sync_owners, to_record
from fiscal_ledger.taxonomy import DEFAULT_BUCKET

from tests.helpers.db import add_account, add_transaction, add_user, get_transaction
from tests.helpers.fake_feed import FakeFeed, page, plaid_txn


@pytest.fixture()
def owner(session):
    add_user(session, "u1")
    add_account(session, "u1", "acc-1")
    return "u1"


def _engine(session_factory, feed, **kwargs) -> SyncEngine:
    return SyncEngine(session_factory, feed, ResolutionPipeline(None), **kwargs)


def _count(session) -> int:
    session.expire_all()
    return session.scalar(select(func.count()).select_from(LedgerTransaction))


def _cursor(session, account_id: str = "acc-1") -> str | None:
    session.expire_all()
    return session.get(LedgerAccount, account_id).sync_cursor


def _failing_commits(session_factory, failures: int = 1):
    left = {"n": failures}

    def _make():
        s = session_factory()
        real_commit = s.commit

        def _commit() -> None:
            if left["n"] > 0:
                left["n"] -= 1
                raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
            real_commit()

        s.commit = _commit
        return s

    return _make


def test_first_sync_stores_inverted_amounts_and_advances_cursor(session, session_factory, owner) -> None:
    feed = FakeFeed(
        {
            None: page(
                added=[
                    plaid_txn("t1", amount="85.30", name="HOME DEPOT #1234"),
                    plaid_txn("t2", amount="-1200.00", name="MONTHLY RENT UNIT 4"),
                    plaid_txn("t3", account_id="acc-other", amount="5.00"),
                ],
                next_cursor="c1",
            )
        }
    )
    engine = _engine(session_factory, feed)
    result = engine.sync_account("u1", "acc-1")

    assert engine.state is SyncState.IDLE
    assert (result.pages, result.added, result.skipped) == (1, 2, 1)
    assert feed.requests == [("access-sandbox-1", None)]
    assert _cursor(session) == "c1"

    t1 = get_transaction(session, "u1", "t1")
    assert t1.amount == Decimal("-85.30")
    assert (t1.l1, t1.l2, t1.l3) == ("Operating Expenses", "Office Expenses", "Supplies")
    assert t1.category_source == "heuristic"
    assert t1.review_status == "needs-review"

    t2 = get_transaction(session, "u1", "t2")
    assert t2.amount == Decimal("1200.00")
    assert t2.l0 == "INCOME"
    assert get_transaction(session, "u1", "t3") is None


def test_reingesting_a_page_creates_no_duplicates(session, session_factory, owner) -> None:
    first = page(added=[plaid_txn("t1"), plaid_txn("t2")], next_cursor="c1")
    _engine(session_factory, FakeFeed({None: first})).sync_account("u1", "acc-1")

    # Simulate a redelivery of the same page from the previous cursor.
    session.execute(update(LedgerAccount).where(LedgerAccount.id == "acc-1").values(sync_cursor=None))
    session.commit()
    _engine(session_factory, FakeFeed({None: first})).sync_account("u1", "acc-1")

    assert _count(session) == 2


def test_pages_are_followed_while_has_more(session, session_factory, owner) -> None:
    feed = FakeFeed(
        {
            None: page(added=[plaid_txn("t1")], next_cursor="c1", has_more=True),
            "c1": page(added=[plaid_txn("t2")], modified=[plaid_txn("t1", amount="20.00")], next_cursor="c2"),
        }
    )
    result = _engine(session_factory, feed).sync_account("u1", "acc-1")

    assert [c for _, c in feed.requests] == [None, "c1"]
    assert (result.pages, result.added, result.modified) == (2, 2, 1)
    assert _cursor(session) == "c2"
    assert get_transaction(session, "u1", "t1").amount == Decimal("-20.00")


def test_small_batch_ceiling_commits_in_groups(session, session_factory, owner) -> None:
    added = [plaid_txn(f"t{i}") for i in range(7)]
    engine = _engine(session_factory, FakeFeed({None: page(added=added, next_cursor="c1")}), batch_ceiling=3)
    engine.sync_account("u1", "acc-1")
    assert _count(session) == 7
    assert _cursor(session) == "c1"


def test_confirmed_records_keep_their_label(session, session_factory, owner) -> None:
    add_transaction(
        session,
        "u1",
        "t1",
        account_id="acc-1",
        amount="-85.30",
        description="HOME DEPOT #1234",
        l0="OPERATING EXPENSE",
        l1="Property Operations (Rentals)",
        l2="Repairs",
        category_source="user-rule",
        confidence=Decimal("1.00"),
        review_status="confirmed",
    )
    feed = FakeFeed(
        {None: page(modified=[plaid_txn("t1", amount="90.00", name="HOME DEPOT #1234")], next_cursor="c1")}
    )
    result = _engine(session_factory, feed).sync_account("u1", "acc-1")

    row = get_transaction(session, "u1", "t1")
    assert result.preserved == 1
    assert row.amount == Decimal("-90.00")
    assert (row.l1, row.l2) == ("Property Operations (Rentals)", "Repairs")
    assert row.review_status == "confirmed"
    assert row.category_source == "user-rule"


def test_removed_records_are_soft_deleted_by_default(session, session_factory, owner) -> None:
    add_transaction(session, "u1", "t1", account_id="acc-1", amount="-5", description="X")
    feed = FakeFeed({None: page(removed=[("t1", "acc-1")], next_cursor="c1")})
    result = _engine(session_factory, feed).sync_account("u1", "acc-1")

    row = get_transaction(session, "u1", "t1")
    assert result.removed == 1
    assert row.is_deleted is True
    assert row.deleted_at is not None


def test_removed_records_hard_delete_policy(session, session_factory, owner) -> None:
    add_transaction(session, "u1", "t1", account_id="acc-1", amount="-5", description="X")
    feed = FakeFeed({None: page(removed=[("t1", "acc-1")], next_cursor="c1")})
    _engine(session_factory, feed, removed_policy="hard").sync_account("u1", "acc-1")
    assert get_transaction(session, "u1", "t1") is None


def test_commit_failure_leaves_cursor_and_moves_to_error(session, session_factory, owner) -> None:
    feed = FakeFeed({None: page(added=[plaid_txn("t1"), plaid_txn("t2")], next_cursor="c1")})
    engine = _engine(_failing_commits(session_factory), feed)

    with pytest.raises(CommitError) as excinfo:
        engine.sync_account("u1", "acc-1")

    assert engine.state is SyncState.ERROR
    assert excinfo.value.owner_id == "u1"
    assert excinfo.value.account_id == "acc-1"
    assert excinfo.value.page_index == 0
    assert _cursor(session) is None
    assert _count(session) == 0
    assert "disk I/O error" in session.get(LedgerAccount, "acc-1").last_sync_error

    # The next run re-fetches the same page and succeeds.
    _engine(session_factory, feed).sync_account("u1", "acc-1")
    assert _cursor(session) == "c1"
    assert _count(session) == 2


def test_commit_failure_on_later_page_keeps_previous_cursor(
    session, session_factory, owner, monkeypatch: pytest.MonkeyPatch
) -> None:
    feed = FakeFeed(
        {
            None: page(added=[plaid_txn("t1")], next_cursor="c1", has_more=True),
            "c1": page(added=[plaid_txn("t2")], next_cursor="c2"),
        }
    )
    real_commit = WriteBatch.commit
    calls = {"n": 0}

    # Page 0 commits twice (records, then cursor); the third commit is page 1's records.
    def _flaky_commit(self: WriteBatch) -> int:
        calls["n"] += 1
        if calls["n"] == 3:
            raise OperationalError("COMMIT", {}, Exception("quota exceeded"))
        return real_commit(self)

    monkeypatch.setattr(WriteBatch, "commit", _flaky_commit)
    result = SyncResult(user_id="u1", account_id="acc-1")
    with pytest.raises(CommitError) as excinfo:
        _engine(session_factory, feed).sync_account("u1", "acc-1", result=result)

    # Only the committed first page is counted.
    assert (result.pages, result.added, result.cursor) == (1, 1, "c1")
    assert result.error.startswith("CommitError")

    assert excinfo.value.page_index == 1
    assert excinfo.value.cursor == "c1"
    assert _cursor(session) == "c1"
    assert get_transaction(session, "u1", "t1") is not None
    assert get_transaction(session, "u1", "t2") is None


def test_feed_failure_propagates_without_writes(session, session_factory, owner) -> None:
    engine = _engine(session_factory, FakeFeed({}, fail_on=[None]))
    with pytest.raises(FeedError):
        engine.sync_account("u1", "acc-1")
    assert engine.state is SyncState.ERROR
    assert _cursor(session) is None


def test_resolution_failure_stores_record_unresolved(session, session_factory, owner) -> None:
    class _Pipeline:
        def resolve(self, txn, ctx=None):
            if txn.id == "bad":
                raise ValueError("boom")
            return Resolution(DEFAULT_BUCKET, "heuristic", 0.5, "ok")

    feed = FakeFeed({None: page(added=[plaid_txn("bad"), plaid_txn("good")], next_cursor="c1")})
    engine = SyncEngine(session_factory, feed, _Pipeline())  # type: ignore[arg-type]
    result = engine.sync_account("u1", "acc-1")

    assert result.unresolved == 1
    assert get_transaction(session, "u1", "bad").category_source == "unresolved"
    assert get_transaction(session, "u1", "good").category_source == "heuristic"
    assert _cursor(session) == "c1"


def test_sync_owners_isolates_failures_and_dedupes(session, session_factory, owner) -> None:
    feed = FakeFeed({None: page(added=[plaid_txn("t1")], next_cursor="c1")})
    results = sync_owners(
        [("u1", "acc-1"), ("u1", "acc-1"), ("u1", "missing")],
        lambda: _engine(session_factory, feed),
    )

    assert [r.account_id for r in results] == ["acc-1", "missing"]
    assert not results[0].failed
    assert results[1].failed
    assert "AccountNotFound" in results[1].error
    assert len(feed.requests) == 1


def test_webhook_syncs_auto_sync_owners_only(session, session_factory) -> None:
    add_user(session, "auto", auto_sync=True)
    add_user(session, "manual")
    add_account(session, "auto", "acc-a", item_id="item-9")
    add_account(session, "manual", "acc-m", item_id="item-9")
    feed = FakeFeed({None: page(added=[plaid_txn("t1", account_id="acc-a")], next_cursor="c1")})

    results = handle_webhook(
        {"webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE", "item_id": "item-9"},
        session_factory=session_factory,
        engine_factory=lambda: _engine(session_factory, feed),
    )

    assert [(r.user_id, r.account_id) for r in results] == [("auto", "acc-a")]
    assert _cursor(session, "acc-a") == "c1"
    assert _cursor(session, "acc-m") is None


def test_webhook_ignores_other_codes(session_factory) -> None:
    results = handle_webhook(
        {"webhook_type": "ITEM", "webhook_code": "ERROR", "item_id": "item-9"},
        session_factory=session_factory,
        engine_factory=lambda: pytest.fail("engine must not be built"),
    )
    assert results == []


def test_sync_owners_keeps_counts_of_committed_pages(session, session_factory, owner) -> None:
    feed = FakeFeed(
        {None: page(added=[plaid_txn("t1"), plaid_txn("t2")], next_cursor="c1", has_more=True)},
        fail_on=["c1"],
    )
    [result] = sync_owners([("u1", "acc-1")], lambda: _engine(session_factory, feed))

    assert result.failed
    assert result.error.startswith("FeedError")
    assert (result.pages, result.added, result.cursor) == (1, 2, "c1")
    assert _cursor(session) == "c1"


def test_cursor_write_is_compare_and_set(session, owner) -> None:
    batch = WriteBatch(session, ceiling=1)
    batch.stage(save_cursor("acc-1", "c9", expected="c0"))
    with pytest.raises(StaleDataError):
        batch.commit()
    assert _cursor(session) is None

    batch.stage(save_cursor("acc-1", "c1", expected=None))
    batch.commit()
    assert _cursor(session) == "c1"


class _RacingFeed(FakeFeed):
    """Lets a rival worker drain the account while the first fetch is in flight."""

    def __init__(self, pages, rival) -> None:
        super().__init__(pages)
        self._rival = rival

    def transactions_sync(self, access_token, cursor):
        if self._rival is not None:
            rival, self._rival = self._rival, None
            rival()
        return super().transactions_sync(access_token, cursor)


def test_concurrent_worker_cannot_move_cursor_back(session, session_factory, owner) -> None:
    pages = {
        None: page(added=[plaid_txn("t1", amount="10.00")], next_cursor="c1", has_more=True),
        "c1": page(modified=[plaid_txn("t1", amount="99.00")], next_cursor="c2"),
    }
    rival = _engine(session_factory, FakeFeed(pages))
    slow = _engine(session_factory, _RacingFeed(pages, lambda: rival.sync_account("u1", "acc-1")))

    with pytest.raises(CommitError) as excinfo:
        slow.sync_account("u1", "acc-1")

    assert excinfo.value.page_index == 0
    assert excinfo.value.cursor is None
    assert slow.state is SyncState.ERROR
    assert _cursor(session) == "c2"
    # The stale first page did not overwrite the newer version.
    assert get_transaction(session, "u1", "t1").amount == Decimal("-99.00")


@pytest.mark.parametrize(
    ("feed_amount", "ledger_amount"),
    [("12.345", "-12.35"), ("-4.5", "4.50"), ("0.004", "0.00")],
)
def test_to_record_inverts_sign_at_cent_precision(feed_amount: str, ledger_amount: str) -> None:
    record = to_record("u1", plaid_txn("t1", amount=feed_amount, primary="FOOD_AND_DRINK"))

    assert record.amount == Decimal(ledger_amount)
    assert record.provider_category == {"primary": "FOOD_AND_DRINK"}
