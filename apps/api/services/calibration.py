"""Threshold calibration from two finalized class distributions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from services.statistics import StatsSnapshot

MAX_WEIGHT = 5.0


@dataclass(frozen=True)
class ThresholdResult:
    metric_name: str
    positive: StatsSnapshot
    negative: StatsSnapshot
    optimal_threshold: float
    weight: float

    def summary(self, digits: int = 4) -> Dict[str, Any]:
        """Rounded display form used in processing reports."""
        return {
            "metric": self.metric_name,
            "optimal_threshold": round(self.optimal_threshold, digits),
            "weight": round(self.weight, digits),
            "positive_mean": round(self.positive.mean, digits),
            "negative_mean": round(self.negative.mean, digits),
        }


def cohens_d(positive: StatsSnapshot, negative: StatsSnapshot) -> float:
    pooled_std = math.sqrt((positive.std ** 2 + negative.std ** 2) / 2)
    if pooled_std == 0:
        return 0.0
    return abs(positive.mean - negative.mean) / pooled_std


def imbalance_weighted_threshold(positive: StatsSnapshot, negative: StatsSnapshot) -> float:
    """Cutoff between class means, pulled toward the less-represented class's mean.

    Each mean is weighted by the *other* class's share of the samples.
    """
    total = positive.n + negative.n
    positive_share = positive.n / total if total > 0 else 0.5
    negative_share = negative.n / total if total > 0 else 0.5
    return positive.mean * negative_share + negative.mean * positive_share


def calibrate(metric_name: str, positive: StatsSnapshot, negative: StatsSnapshot) -> Optional[ThresholdResult]:
    """Return the calibrated threshold for a metric, or None when neither class has data."""
    if positive.n == 0 and negative.n == 0:
        return None
    return ThresholdResult(
        metric_name=metric_name,
        positive=positive,
        negative=negative,
        optimal_threshold=imbalance_weighted_threshold(positive, negative),
        weight=min(cohens_d(positive, negative), MAX_WEIGHT),
    )
