from __future__ import annotations

import threading
import time
from collections import defaultdict

import pytest

from ledger_pipeline.config import resolve_workers
from ledger_pipeline.workers import p_map, run_bucketed


class _Gauge:
    """Tracks how many calls are in flight, overall and per key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[object, int] = defaultdict(int)
        self.peak: dict[object, int] = defaultdict(int)

    def enter(self, key: object) -> None:
        with self._lock:
            self._active[key] += 1
            self.peak[key] = max(self.peak[key], self._active[key])

    def leave(self, key: object) -> None:
        with self._lock:
            self._active[key] -= 1


def test_p_map_preserves_order_and_bounds_concurrency():
    gauge = _Gauge()

    def work(n: int) -> int:
        gauge.enter("all")
        try:
            time.sleep(0.01 * (5 - n % 5))
            return n * n
        finally:
            gauge.leave("all")

    assert p_map(range(12), work, concurrency=3) == [n * n for n in range(12)]
    assert 1 <= gauge.peak["all"] <= 3


def test_p_map_reraises_first_failure():
    def work(n: int) -> int:
        if n == 2:
            raise KeyError(n)
        return n

    with pytest.raises(KeyError):
        p_map([0, 1, 2, 3], work, concurrency=2)


@pytest.mark.parametrize("bad", [0, -1, 1.5])
def test_p_map_rejects_bad_concurrency(bad):
    with pytest.raises(ValueError):
        p_map([1], lambda x: x, concurrency=bad)


def test_run_bucketed_serializes_each_bucket():
    gauge = _Gauge()
    seen: dict[str, list[int]] = defaultdict(list)
    items = [("a", 0), ("b", 1), ("a", 2), ("c", 3), ("b", 4), ("a", 5)]

    def handle(item: tuple[str, int]) -> int:
        key, n = item
        gauge.enter(key)
        try:
            time.sleep(0.005)
            seen[key].append(n)
            return n * 10
        finally:
            gauge.leave(key)

    out = run_bucketed(items, handle, key=lambda item: item[0], concurrency=3)

    assert out == [0, 10, 20, 30, 40, 50]
    assert all(peak == 1 for peak in gauge.peak.values())
    assert seen == {"a": [0, 2, 5], "b": [1, 4], "c": [3]}


def test_run_bucketed_empty():
    assert run_bucketed([], lambda x: x, key=lambda x: x, concurrency=4) == []


def test_resolve_workers(monkeypatch: pytest.MonkeyPatch):
    assert resolve_workers(10) == 1
    assert resolve_workers(10, 4) == 4
    assert resolve_workers(2, 8) == 2
    assert resolve_workers(100, 64) == 16
    monkeypatch.setenv("LEDGER_SWEEP_WORKERS", "6")
    assert resolve_workers(10) == 6
    monkeypatch.setenv("LEDGER_SWEEP_WORKERS", "lots")
    assert resolve_workers(10) == 1
