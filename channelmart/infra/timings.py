# channelmart/infra/timings.py
from __future__ import annotations
import math
import time
from typing import Dict, List

# kind -> [n, mean, m2] (Welford); constant memory per kind
# no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    agg = _TIMINGS.get(kind)
    if agg is None:
        agg = [0, 0.0, 0.0]
        _TIMINGS[kind] = agg
    agg[0] += 1
    delta = value - agg[1]
    agg[1] += delta / agg[0]
    agg[2] += delta * (value - agg[1])


class timeit:
    """async usage:
        async with timeit("gateway.create_invoice"):
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


def _mean_std(agg: List[float]) -> tuple[float, float]:
    n, mean, m2 = agg
    if n == 0:
        return 0.0, 0.0
    # sample standard deviation
    return mean, math.sqrt(m2 / (n - 1)) if n > 1 else 0.0


def snapshot() -> List[Dict[str, float]]:
    # one record per kind: {"kind","n","mean","std"}
    out = []
    for kind, agg in sorted(_TIMINGS.items()):
        mean, std = _mean_std(agg)
        out.append({"kind": kind, "n": int(agg[0]), "mean": mean,
                    "std": std})
    return out


def reset() -> None:
    _TIMINGS.clear()
