"""Bounded thread pool that serializes work per bucket.

Two helpers:

- ``p_map(items, fn, concurrency=N)``: order-preserving map with at most ``N``
  calls in flight; the first failure cancels work that has not started and is
  re-raised.
- ``run_bucketed(items, handler, key=..., concurrency=N)``: groups items by
  ``key`` and drains each group sequentially on one worker, while different
  groups run concurrently. Used with the account (bank, last-4) for batch
  saves and the dedup hash for the expiry sweep, so two items that could race
  on the same duplicate check or pending row never run at the same time.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


def p_map(
    items: Iterable[InT],
    fn: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[OutT]:
    """Map ``items`` through ``fn`` on up to ``concurrency`` threads.

    Results keep the input order. Items are pulled lazily so only
    ``concurrency`` submissions are outstanding at any time.
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    source = enumerate(items)
    results: dict[int, OutT] = {}
    owners: dict[Future[OutT], int] = {}

    def _next(pool: ThreadPoolExecutor) -> Future[OutT] | None:
        try:
            idx, item = next(source)
        except StopIteration:
            return None
        fut = pool.submit(fn, item)
        owners[fut] = idx
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        in_flight: set[Future[OutT]] = set()
        for _ in range(concurrency):
            fut = _next(pool)
            if fut is None:
                break
            in_flight.add(fut)

        while in_flight:
            done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = owners.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception:
                    pool.shutdown(wait=False, cancel_futures=True)
                    raise
            for _ in done:
                fut = _next(pool)
                if fut is None:
                    break
                in_flight.add(fut)

    return [results[i] for i in sorted(results)]


def run_bucketed(
    items: Iterable[InT],
    handler: Callable[[InT], OutT],
    *,
    key: Callable[[InT], Hashable],
    concurrency: int = 1,
) -> list[OutT]:
    """Run ``handler`` over ``items``; sequential within a bucket.

    Returns the handler results in the original item order.
    """

    buckets: dict[Hashable, list[tuple[int, InT]]] = {}
    total = 0
    for idx, item in enumerate(items):
        buckets.setdefault(key(item), []).append((idx, item))
        total += 1

    def _drain(bucket: list[tuple[int, InT]]) -> list[tuple[int, OutT]]:
        return [(idx, handler(item)) for idx, item in bucket]

    out: list[OutT | None] = [None] * total
    for drained in p_map(buckets.values(), _drain, concurrency=concurrency):
        for idx, value in drained:
            out[idx] = value
    return out  # type: ignore[return-value]


__all__ = ["p_map", "run_bucketed"]
