import pytest

from services.calibration import MAX_WEIGHT, calibrate, cohens_d, imbalance_weighted_threshold
from services.statistics import EMPTY_SNAPSHOT, StatsSnapshot


def test_balanced_classes_put_threshold_at_midpoint():
    positive = StatsSnapshot(mean=300.0, std=20.0, n=50)
    negative = StatsSnapshot(mean=200.0, std=20.0, n=50)
    assert imbalance_weighted_threshold(positive, negative) == pytest.approx(250.0)


def test_threshold_weights_each_mean_by_the_other_class_share():
    positive = StatsSnapshot(mean=10.0, std=1.0, n=1)
    negative = StatsSnapshot(mean=2.0, std=1.0, n=3)
    # 10 * 3/4 + 2 * 1/4
    assert imbalance_weighted_threshold(positive, negative) == pytest.approx(8.0)


@pytest.mark.parametrize("ratio", [1, 3, 10, 100])
def test_equal_means_give_the_shared_mean_at_any_class_ratio(ratio):
    positive = StatsSnapshot(mean=42.5, std=3.0, n=ratio)
    negative = StatsSnapshot(mean=42.5, std=7.0, n=1)
    assert imbalance_weighted_threshold(positive, negative) == pytest.approx(42.5)
    assert imbalance_weighted_threshold(negative, positive) == pytest.approx(42.5)


def test_threshold_moves_monotonically_toward_minority_mean_as_imbalance_grows():
    positive = StatsSnapshot(mean=10.0, std=1.0, n=1)
    fewer_positives = [
        imbalance_weighted_threshold(positive, StatsSnapshot(mean=2.0, std=1.0, n=ratio))
        for ratio in (1, 3, 10, 100)
    ]
    assert fewer_positives == sorted(fewer_positives)
    assert len(set(fewer_positives)) == len(fewer_positives)
    assert 6.0 <= fewer_positives[0] and fewer_positives[-1] < 10.0

    negative = StatsSnapshot(mean=2.0, std=1.0, n=1)
    fewer_negatives = [
        imbalance_weighted_threshold(StatsSnapshot(mean=10.0, std=1.0, n=ratio), negative)
        for ratio in (1, 3, 10, 100)
    ]
    assert fewer_negatives == sorted(fewer_negatives, reverse=True)
    assert fewer_negatives[-1] > 2.0


def test_threshold_with_single_class_collapses_to_missing_class_mean():
    positive = StatsSnapshot(mean=12.0, std=1.0, n=5)
    assert imbalance_weighted_threshold(positive, EMPTY_SNAPSHOT) == pytest.approx(0.0)


def test_cohens_d_uses_pooled_std():
    positive = StatsSnapshot(mean=6.0, std=2.0, n=10)
    negative = StatsSnapshot(mean=4.0, std=2.0, n=10)
    assert cohens_d(positive, negative) == pytest.approx(1.0)


def test_zero_spread_yields_zero_weight():
    positive = StatsSnapshot(mean=1.0, std=0.0, n=3)
    negative = StatsSnapshot(mean=5.0, std=0.0, n=3)
    result = calibrate("line_adherence", positive, negative)
    assert result is not None
    assert result.weight == 0.0
    assert result.optimal_threshold == pytest.approx(3.0)


def test_weight_is_capped():
    positive = StatsSnapshot(mean=100.0, std=1.0, n=10)
    negative = StatsSnapshot(mean=0.0, std=1.0, n=10)
    result = calibrate("attention_lapses", positive, negative)
    assert result.weight == MAX_WEIGHT


def test_calibrate_skips_metrics_without_any_data():
    assert calibrate("writing_speed", EMPTY_SNAPSHOT, EMPTY_SNAPSHOT) is None


def test_summary_rounds_to_four_places():
    positive = StatsSnapshot(mean=1 / 3, std=0.1, n=2)
    negative = StatsSnapshot(mean=2 / 3, std=0.1, n=2)
    summary = calibrate("chaos_index", positive, negative).summary()
    assert summary == {
        "metric": "chaos_index",
        "optimal_threshold": 0.5,
        "weight": pytest.approx(3.3333),
        "positive_mean": 0.3333,
        "negative_mean": 0.6667,
    }
