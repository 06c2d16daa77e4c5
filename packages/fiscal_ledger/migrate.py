"""Paged, resumable bulk rewrites of stored transactions.

A :class:`MigrationRunner` walks one owner's transactions in ``(date, id)``
order with keyset pagination, hands every record to a *transform* and writes
back only the fields that changed. Writes go out in bounded batches that
flush when full and at the end of every page.

A transform is a callable ``record -> record | None``; ``None`` (or an
identical record) means "leave it alone". Transforms must be idempotent so a
second run over the same data updates nothing.

Shipped transforms:
    - :func:`normalize_l0_transform`: coerce ``l0`` into the six-set.
    - :class:`RepairTransform`: re-resolve records queued for review.
    - :class:`LegacyMappingTransform`: map legacy ``"A > B > C"`` strings
      through the mapping table.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import date

from sqlalchemy import ColumnElement, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import CategoryMapping, LedgerTransaction

from .errors import CommitError
from .heuristics import enforce_accounting_rules
from .logging_setup import get_logger
from .models import RunStats, TransactionRecord, UserContext
from .persistence import WriteBatch, apply_changes, fetch_page
from .pipeline import ResolutionPipeline, apply_resolution
from .pmap import p_map
from .taxonomy import CategoryLabel, normalize_hierarchy, normalize_l0, parse_legacy_path

type Transform = Callable[[TransactionRecord], TransactionRecord | None]

_logger = get_logger("fiscal_ledger.migrate")


# ---- Runner ------------------------------------------------------------------


class MigrationRunner:
    """Apply a transform to every transaction of an owner.

    Parameters
    ----------
    session_factory:
        Zero-argument callable returning a new ``Session``; one session is
        opened per owner.
    page_size:
        Records read per keyset page.
    batch_size:
        Maximum staged writes per commit.
    dry_run:
        Compute the same statistics without writing anything.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        page_size: int = 400,
        batch_size: int = 450,
        dry_run: bool = False,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._session_factory = session_factory
        self.page_size = page_size
        self.batch_size = batch_size
        self.dry_run = dry_run

    def _flush(
        self, batch: WriteBatch, owner_id: str, page_index: int, after: tuple[date, str] | None
    ) -> int:
        try:
            return batch.commit()
        except SQLAlchemyError as e:
            raise CommitError(
                f"migration commit failed for owner {owner_id!r} page {page_index}: {e}",
                owner_id=owner_id,
                page_index=page_index,
                cursor=f"{after[0].isoformat()}|{after[1]}" if after else None,
            ) from e

    def run(
        self,
        owner_id: str,
        transform: Transform,
        *,
        where: ColumnElement[bool] | None = None,
        stats: RunStats | None = None,
    ) -> RunStats:
        """Run ``transform`` over ``owner_id``'s records matching ``where``.

        A transform failure on one record counts as ``errored`` and the run
        continues. Page read and commit failures propagate
        (:class:`~fiscal_ledger.errors.CommitError` for rejected batches).
        ``updated`` only counts committed writes; pass ``stats`` to keep the
        counters of the pages written before such a failure, which is also
        recorded on it.
        """

        if stats is None:
            stats = RunStats(owner_id=owner_id)
        session = self._session_factory()
        try:
            batch = WriteBatch(session, ceiling=self.batch_size, dry_run=self.dry_run)
            after: tuple[date, str] | None = None
            page_index = 0
            while True:
                page = fetch_page(session, owner_id, limit=self.page_size, after=after, where=where)
                if not page:
                    break
                for record in page:
                    stats.scanned += 1
                    try:
                        updated = transform(record)
                    except Exception as e:  # noqa: BLE001 - isolate per-record failures
                        stats.errored += 1
                        _logger.warning(
                            "migrate:transform_failed owner_id=%s transaction_id=%s error_type=%s error=%s",
                            owner_id,
                            record.id,
                            type(e).__name__,
                            e,
                        )
                        continue
                    changes = record.changed_fields(updated) if updated is not None else {}
                    if not changes:
                        stats.skipped += 1
                        continue
                    if batch.full:
                        stats.updated += self._flush(batch, owner_id, page_index, after)
                    batch.stage(apply_changes(owner_id, record.id, changes))
                stats.updated += self._flush(batch, owner_id, page_index, after)
                after = (page[-1].date, page[-1].id)
                _logger.debug(
                    "migrate:page_done owner_id=%s page=%d scanned=%d updated=%d",
                    owner_id,
                    page_index,
                    stats.scanned,
                    stats.updated,
                )
                page_index += 1
                if len(page) < self.page_size:
                    break
        except Exception as e:
            stats.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            session.close()

        _logger.info(
            "migrate:owner_done owner_id=%s scanned=%d updated=%d skipped=%d errored=%d dry_run=%s",
            owner_id,
            stats.scanned,
            stats.updated,
            stats.skipped,
            stats.errored,
            self.dry_run,
        )
        return stats

    def run_owners(
        self,
        owner_ids: Iterable[str],
        transform: Transform | Callable[[str], Transform],
        *,
        where: ColumnElement[bool] | None = None,
        concurrency: int = 1,
        per_owner: bool = False,
    ) -> list[RunStats]:
        """Run for several owners; a failing owner does not stop the others.

        A failed owner's stats keep the counters of its committed pages.

        With ``per_owner=True`` ``transform`` is a factory called with each
        owner id (for transforms that need owner context).
        """

        def _one(owner_id: str) -> RunStats:
            stats = RunStats(owner_id=owner_id)
            try:
                fn = transform(owner_id) if per_owner else transform  # type: ignore[call-arg]
                return self.run(owner_id, fn, where=where, stats=stats)  # type: ignore[arg-type]
            except Exception as e:  # noqa: BLE001 - isolate owners from one another
                _logger.error(
                    "migrate:owner_failed owner_id=%s updated=%d error_type=%s error=%s",
                    owner_id,
                    stats.updated,
                    type(e).__name__,
                    e,
                )
                stats.error = f"{type(e).__name__}: {e}"
                return stats

        return p_map(list(dict.fromkeys(owner_ids)), _one, concurrency=concurrency)


# ---- Transforms --------------------------------------------------------------


def normalize_l0_transform(record: TransactionRecord) -> TransactionRecord | None:
    """Rewrite ``l0`` into the six-set; ``None`` when already canonical."""

    l0 = normalize_l0(record.l0, record.amount).value
    if l0 == record.l0:
        return None
    return record.replace(l0=l0)


class RepairTransform:
    """Re-resolve records still waiting for review.

    Only writes when the new answer is resolved and strictly more confident
    than what is stored.
    """

    where = LedgerTransaction.review_status == "needs-review"

    def __init__(
        self,
        pipeline: ResolutionPipeline,
        contexts: Mapping[str, UserContext] | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._contexts = contexts or {}

    def __call__(self, record: TransactionRecord) -> TransactionRecord | None:
        if record.review_status != "needs-review":
            return None
        resolution = self._pipeline.resolve(record, self._contexts.get(record.user_id))
        if resolution.source == "unresolved":
            return None
        current = float(record.confidence) if record.confidence is not None else 0.0
        if resolution.confidence <= current:
            return None
        return apply_resolution(record, resolution)


def load_category_mappings(session: Session) -> dict[str, CategoryLabel]:
    """Read the legacy mapping table keyed by normalized legacy path."""

    out: dict[str, CategoryLabel] = {}
    for row in session.scalars(select(CategoryMapping)):
        key = legacy_key(row.legacy_key)
        out[key] = normalize_hierarchy(row.l0, row.l1, row.l2, row.l3, amount=-1)
    return out


def legacy_key(value: str) -> str:
    return " > ".join(p for p in parse_legacy_path(value) if p).upper()


class LegacyMappingTransform:
    """Map ``legacy_category`` through the mapping table into ``l0`` to ``l3``.

    Records without a legacy string, or whose string has no mapping, are left
    alone.
    """

    where = LedgerTransaction.legacy_category.is_not(None)

    def __init__(self, mappings: Mapping[str, CategoryLabel]) -> None:
        self._mappings = {legacy_key(k): v for k, v in mappings.items()}

    def __call__(self, record: TransactionRecord) -> TransactionRecord | None:
        if not record.legacy_category:
            return None
        label = self._mappings.get(legacy_key(record.legacy_category))
        if label is None:
            return None
        return record.with_label(enforce_accounting_rules(label, record.amount))


__all__ = [
    "LegacyMappingTransform",
    "MigrationRunner",
    "RepairTransform",
    "Transform",
    "legacy_key",
    "load_category_mappings",
    "normalize_l0_transform",
]
