# footypay/infra/timings.py
"""In-process latency samples per call kind, aggregated on read.

Samples live in a bounded window per kind, so a long-running worker keeps
the most recent ``TIMINGS_WINDOW`` observations and nothing more.
"""
from __future__ import annotations
import os
import statistics
import time
from collections import deque
from typing import Deque, Dict, List

TIMINGS_WINDOW = int(os.environ.get("TIMINGS_WINDOW", "10000"))

# single event loop per process: plain dict, no locks
_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    window = _SAMPLES.get(kind)
    if window is None:
        window = _SAMPLES[kind] = deque(maxlen=TIMINGS_WINDOW)
    window.append(float(seconds))


class timeit:
    """Record how long the ``async with`` body took under ``kind``.

    Exits through an exception are recorded too; a timed-out processor call
    is exactly the latency worth seeing.
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self.started)


def _summary(kind: str, values: List[float]) -> Dict[str, float]:
    n = len(values)
    ordered = sorted(values)
    return {
        "kind": kind,
        "n": n,
        "mean": statistics.fmean(values),
        "std": statistics.stdev(values) if n > 1 else 0.0,
        "p95": ordered[min(n - 1, int(0.95 * n))],
        "max": ordered[-1],
    }


def aggregates() -> List[Dict[str, float]]:
    return [
        _summary(kind, list(_SAMPLES[kind]))
        for kind in sorted(_SAMPLES)
        if _SAMPLES[kind]
    ]


def reset() -> None:
    _SAMPLES.clear()
