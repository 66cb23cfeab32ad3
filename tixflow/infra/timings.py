# tixflow/infra/timings.py
from __future__ import annotations
import math
import time
from typing import Dict, List


class RunningStats:
    """Count, mean and M2 of one timing kind (Welford); O(1) memory."""
    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (value - self.mean)

    @property
    def std(self) -> float:
        # sample standard deviation
        if self.n < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.n - 1))


# ------------ hot path: fold into running stats ------------
# one accumulator per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, RunningStats] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    stats = _TIMINGS.get(kind)
    if stats is None:
        stats = RunningStats()
        _TIMINGS[kind] = stats
    stats.add(float(value))


class timeit:
    """async usage:
        async with timeit("fulfillment.line"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


def aggregates() -> List[Dict[str, float]]:
    return [
        {"kind": kind, "n": s.n, "mean": s.mean, "std": s.std}
        for kind, s in sorted(_TIMINGS.items())
    ]
