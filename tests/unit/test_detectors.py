"""
Unit tests for anomaly detectors.
"""

from datetime import datetime, timedelta, timezone

import pytest

from studentalerts.anomaly.detectors import (
    AssociationDetector,
    BetaRateDetector,
    BurstDetector,
    CUSUMShiftDetector,
    EWMATrendDetector,
    control_limit_multiplier,
    cusum_decision_interval,
    quality_adjustment,
)
from studentalerts.anomaly.schema import BetaPrior, BurstEvent, TrendPoint, is_valid_detector_result

START = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)


def _series(values):
    return [TrendPoint(START + timedelta(days=i), float(v)) for i, v in enumerate(values)]


def test_ewma_detects_sustained_increase():
    result = EWMATrendDetector().detect(_series([2, 2, 2, 2, 2, 9, 9, 9]))

    assert is_valid_detector_result(result)
    assert result.analysis.kind == "ewma"
    assert result.analysis.direction == "up"
    assert result.analysis.used_baseline is False
    assert result.analysis.sustained_count >= result.analysis.sustained_required
    assert 0.6 <= result.confidence <= 0.97


def test_ewma_uses_baseline_reference():
    result = EWMATrendDetector().detect(_series([2, 2, 2, 2, 2, 9, 9, 9]), baseline_median=2.5, baseline_iqr=1.0)

    assert result is not None
    assert result.analysis.used_baseline is True
    assert result.analysis.reference_median == 2.5


def test_ewma_needs_enough_varied_points():
    detector = EWMATrendDetector()

    assert detector.detect(_series([2, 2, 2, 9, 9, 9, 9])) is None
    assert detector.detect(_series([4] * 12)) is None


def test_ewma_ignores_stable_noise():
    assert EWMATrendDetector().detect(_series([3, 4, 3, 4, 3, 4, 3, 4, 3, 4])) is None


def test_cusum_detects_upward_shift():
    result = CUSUMShiftDetector().detect(_series([2, 2, 2, 2, 2, 9, 9, 9]))

    assert is_valid_detector_result(result)
    assert result.analysis.direction == "up"
    assert result.analysis.change_index >= 5
    assert result.analysis.max_cusum > result.analysis.h


def test_cusum_respects_side():
    falling = _series([9, 9, 9, 9, 9, 2, 2, 2])

    assert CUSUMShiftDetector(sided="upper").detect(falling) is None
    result = CUSUMShiftDetector(sided="both").detect(falling)
    assert result is not None
    assert result.analysis.direction == "down"


def test_cusum_short_series():
    assert CUSUMShiftDetector(min_points=6).detect(_series([1, 9, 9])) is None


def test_beta_rate_detects_frequency_shift():
    # 18 of 20 trials against a prior centred on 10%
    result = BetaRateDetector().detect(18, 20, baseline_prior=BetaPrior(alpha=2, beta=18), delta=0.1)

    assert is_valid_detector_result(result)
    assert result.confidence >= 0.9
    assert result.analysis.posterior_mean > 4 * result.analysis.baseline_rate
    assert result.analysis.probability_above > 0.99


def test_beta_rate_rejects_invalid_counts():
    detector = BetaRateDetector()

    assert detector.detect(3, 4) is None
    assert detector.detect(21, 20) is None
    assert detector.detect(2, 20, baseline_prior=BetaPrior(alpha=2, beta=18)) is None


def test_association_detects_strong_table():
    result = AssociationDetector(min_support=5).detect(
        {"a": 8, "b": 1, "c": 1, "d": 8}, context={"factor": "noise_level"}
    )

    assert is_valid_detector_result(result)
    assert result.analysis.support == 18
    assert result.analysis.ci_lower > 0
    assert result.sources[0].details["factor"] == "noise_level"


def test_association_requires_support():
    assert AssociationDetector(min_support=5).detect({"a": 2, "b": 0, "c": 0, "d": 1}) is None


def test_association_ci_spanning_zero_is_silent():
    assert AssociationDetector().detect({"a": 4, "b": 4, "c": 4, "d": 4}) is None


def test_association_with_series_uses_correlation():
    xs = [40, 80, 45, 85, 50, 90, 42, 88]
    ys = [1, 5, 1, 5, 2, 4, 1, 5]
    result = AssociationDetector().detect({"a": 4, "b": 0, "c": 0, "d": 4}, series_x=xs, series_y=ys)

    assert result is not None
    assert result.analysis.correlation > 0.9
    assert result.analysis.correlation_p is not None


def test_burst_finds_dense_window():
    events = [BurstEvent(START + timedelta(minutes=3 * i), 5.0) for i in range(4)]
    events.append(BurstEvent(START + timedelta(hours=5), 5.0))

    result = BurstDetector(window_minutes=15, min_events=3).detect(events)

    assert is_valid_detector_result(result)
    assert result.analysis.event_count == 4
    assert result.analysis.duration_minutes == pytest.approx(9.0)
    assert result.analysis.peak_intensity == 5.0


def test_burst_spread_out_events_are_silent():
    events = [BurstEvent(START + timedelta(hours=i), 5.0) for i in range(5)]

    assert BurstDetector(window_minutes=15, min_events=3).detect(events) is None


def test_tuning_helpers_stay_in_range():
    assert 2.0 <= control_limit_multiplier(1) <= 5.0
    assert control_limit_multiplier(336) == pytest.approx(2.97, abs=0.05)
    assert 4.0 <= cusum_decision_interval(0.1, 10_000) <= 7.5
    assert quality_adjustment(3.0, 0.3) > 3.0
    assert quality_adjustment(3.0, 0.75) == 3.0
    assert quality_adjustment(3.0, None) == 3.0
