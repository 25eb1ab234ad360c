"""
Unit tests for threshold application.
"""

from datetime import datetime, timedelta, timezone

import pytest

from studentalerts.anomaly.detectors import EWMATrendDetector
from studentalerts.anomaly.schema import AlertKind, DetectorResult, TrendPoint
from studentalerts.detection.thresholds import (
    GLOBAL_EXPERIMENT_KEY,
    ThresholdApplicator,
    default_threshold,
    experiment_key_for,
)
from studentalerts.learning.experiments import ExperimentService
from studentalerts.learning.schema import ExperimentDefinition, ThresholdOverride, VariantConfig


@pytest.fixture
def experiments(memory_store):
    return ExperimentService(memory_store)


@pytest.fixture
def applicator(experiments):
    return ThresholdApplicator(experiments)


def _override(detector_type, adjustment, now, baseline_threshold=None):
    return ThresholdOverride(
        detector_type=detector_type,
        adjustment_value=adjustment,
        confidence_level=0.5,
        last_updated_at=now,
        baseline_threshold=baseline_threshold,
    )


def _raw(score=0.8):
    return DetectorResult(score=score, confidence=0.9)


def test_experiment_keys_by_kind():
    assert experiment_key_for(AlertKind.BEHAVIOR_SPIKE) == "alerts.thresholds.behavior"
    assert experiment_key_for(AlertKind.CONTEXT_ASSOCIATION) == "alerts.thresholds.context"
    assert experiment_key_for(AlertKind.INTERVENTION_DUE) == "alerts.thresholds.intervention"
    assert experiment_key_for(AlertKind.DATA_QUALITY) == "alerts.thresholds.dataquality"
    assert experiment_key_for(AlertKind.SAFETY) == GLOBAL_EXPERIMENT_KEY


def test_default_thresholds():
    assert default_threshold("ewma") == 0.6
    assert default_threshold("unknown") == 0.5


def test_passthrough_without_override_or_experiment(applicator, now):
    context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", {}, now)

    result = applicator.apply("ewma", _raw(0.8), context)

    assert result.score == pytest.approx(0.8)
    assert result.threshold_applied == pytest.approx(0.6)
    trace = context.traces["ewma"]
    assert trace.adjustment == pytest.approx(0.0)
    assert trace.baseline_threshold == pytest.approx(0.6)


def test_positive_override_lowers_score(applicator, now):
    overrides = {"ewma": _override("ewma", 0.2, now)}
    context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", overrides, now)

    result = applicator.apply("ewma", _raw(0.8), context)

    assert result.threshold_applied == pytest.approx(0.72)
    assert result.score == pytest.approx(0.8 / 1.2)
    assert context.traces["ewma"].adjustment == pytest.approx(0.2)


@pytest.mark.parametrize(
    "variant",
    [None, VariantConfig(offset=-0.5), VariantConfig(multiplier=0.5, offset=-0.2), VariantConfig(offset=0.1)],
    ids=["no-experiment", "large-negative-offset", "scaled-negative-offset", "positive-offset"],
)
def test_score_is_monotone_in_applied_threshold(applicator, experiments, now, variant):
    if variant is not None:
        experiments.create_experiment(ExperimentDefinition(key="alerts.thresholds.behavior", variants={"arm": variant}))

    applied, scores = [], []
    for adjustment in (-0.25, -0.2, -0.1, 0.0, 0.1, 0.2, 0.25):
        overrides = {"cusum": _override("cusum", adjustment, now)}
        context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", overrides, now)
        result = applicator.apply("cusum", _raw(0.5), context)
        applied.append(result.threshold_applied)
        scores.append(result.score)

    assert all(t > 0 for t in applied)
    assert applied == sorted(applied)
    assert scores == sorted(scores, reverse=True)


def test_negative_override_clamps_to_one(applicator, now):
    overrides = {"beta": _override("beta", -0.5, now)}
    context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", overrides, now)

    assert applicator.apply("beta", _raw(0.9), context).score == 1.0


def test_experiment_variant_multiplier(applicator, experiments, now):
    experiments.create_experiment(
        ExperimentDefinition(key="alerts.thresholds.context", variants={"strict": VariantConfig(multiplier=2.0)})
    )
    context = applicator.context_for(AlertKind.CONTEXT_ASSOCIATION, "s-1", {}, now)

    result = applicator.apply("association", _raw(0.8), context)

    assert context.variant == "strict"
    assert result.threshold_applied == pytest.approx(1.0)
    assert result.score == pytest.approx(0.4)
    assert context.traces["association"].adjustment == pytest.approx(1.0)


def test_experiment_fixed_threshold(applicator, experiments, now):
    experiments.create_experiment(
        ExperimentDefinition(key="alerts.thresholds.behavior", variants={"fixed": VariantConfig(fixed_threshold=0.3)})
    )
    context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", {}, now)

    result = applicator.apply("ewma", _raw(0.3), context)

    assert result.threshold_applied == pytest.approx(0.3)
    assert result.score == pytest.approx(0.6)


def test_baseline_threshold_precedence(applicator, now):
    learned = _override("tau_u", 0.0, now, baseline_threshold=0.4)

    assert applicator.baseline_threshold("tau_u", learned, baseline_override=0.7) == 0.7
    assert applicator.baseline_threshold("tau_u", learned) == 0.4
    assert applicator.baseline_threshold("tau_u") == 0.5


def test_invalid_raw_results_are_dropped(applicator, now):
    context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", {}, now)

    assert applicator.apply("ewma", None, context) is None
    assert applicator.apply("ewma", DetectorResult(score=1.4, confidence=0.9), context) is None
    assert applicator.apply("ewma", DetectorResult(score=float("nan"), confidence=0.9), context) is None
    assert context.traces == {}


def test_analysis_is_stamped(applicator, now):
    start = datetime(2026, 2, 1, tzinfo=timezone.utc)
    series = [TrendPoint(start + timedelta(days=i), float(v)) for i, v in enumerate([2, 2, 2, 2, 2, 9, 9, 9])]
    raw = EWMATrendDetector().detect(series)
    context = applicator.context_for(AlertKind.BEHAVIOR_SPIKE, "s-1", {}, now)

    result = applicator.apply("ewma", raw, context)

    assert result.analysis.detector_type == "ewma"
    assert result.analysis.experiment_key == "alerts.thresholds.behavior"
    assert result.analysis.variant == context.variant
    assert raw.analysis.detector_type is None
