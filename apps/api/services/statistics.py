"""Single-pass per-class statistics for streamed reference datasets."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Hashable, List, Tuple


@dataclass(frozen=True)
class StatsSnapshot:
    mean: float
    std: float
    n: int


EMPTY_SNAPSHOT = StatsSnapshot(mean=0.0, std=0.0, n=0)


class RunningStats:
    """Welford accumulator: O(1) memory regardless of how many values are pushed."""

    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def push(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        # uses the post-update mean
        self.m2 += delta * (value - self.mean)

    def snapshot(self) -> StatsSnapshot:
        if self.n == 0:
            return EMPTY_SNAPSHOT
        return StatsSnapshot(mean=self.mean, std=math.sqrt(self.m2 / self.n), n=self.n)


class StatisticsAccumulator:
    """Running mean/std keyed by (metric, class).

    The class key is normally the boolean positive/negative partition but
    any hashable value works. Callers must read ``n == 0`` as "no data".
    """

    def __init__(self) -> None:
        self._stats: Dict[Tuple[str, Hashable], RunningStats] = {}
        self._metrics: Dict[str, None] = {}
        self._class_counts: Dict[Hashable, int] = {}

    def push(self, metric: str, cls: Hashable, value: float) -> None:
        key = (metric, cls)
        stats = self._stats.get(key)
        if stats is None:
            stats = self._stats[key] = RunningStats()
            self._metrics.setdefault(metric, None)
        stats.push(float(value))

    def snapshot(self, metric: str, cls: Hashable) -> StatsSnapshot:
        stats = self._stats.get((metric, cls))
        return stats.snapshot() if stats is not None else EMPTY_SNAPSHOT

    def metrics(self) -> List[str]:
        """Every metric name seen, in first-seen order."""
        return list(self._metrics)

    def observe_subject(self, cls: Hashable) -> None:
        self._class_counts[cls] = self._class_counts.get(cls, 0) + 1

    def class_count(self, cls: Hashable) -> int:
        return self._class_counts.get(cls, 0)
