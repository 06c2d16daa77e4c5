"""Bounded, order-preserving fan-out over a ThreadPoolExecutor.

Used to run independent owners (or accounts) concurrently. Work for a single
account is never split across workers; callers hand one owner/account per
item and isolate their own failures.

- ``concurrency`` caps the number of mapper calls in flight.
- The first mapper failure is re-raised and work not yet started is
  cancelled.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with at most ``concurrency`` calls in flight.

    The result keeps input order. Items are pulled lazily so the window never
    holds more than ``concurrency`` pending futures.
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    items = enumerate(iterable)
    results: dict[int, OutT] = {}
    pending: dict[Future[OutT], int] = {}

    def _fill(pool: ThreadPoolExecutor) -> None:
        while len(pending) < concurrency:
            nxt = next(items, None)
            if nxt is None:
                return
            idx, item = nxt
            pending[pool.submit(mapper, item)] = idx

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        _fill(pool)
        while pending:
            done, _ = wait(set(pending), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = pending.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception:
                    pool.shutdown(wait=False, cancel_futures=True)
                    raise
            _fill(pool)

    return [results[i] for i in range(len(results))]


__all__ = ["p_map"]
