"""
Unit tests for the feedback-driven threshold learner.
"""

import random

import pytest

from studentalerts.core.config import LearnerConfig
from studentalerts.learning.learner import ThresholdLearner, samples_from_telemetry, summarize_feedback
from studentalerts.learning.schema import AlertFeedback, AlertTelemetryEntry, FeedbackSample
from studentalerts.storage.repositories import InMemoryKeyValueStore


def _learner(epsilon=0.0, seed=0, store=None):
    return ThresholdLearner(
        store or InMemoryKeyValueStore(),
        LearnerConfig(epsilon=epsilon),
        rng=random.Random(seed),
    )


def _samples(relevant, irrelevant):
    return [FeedbackSample(relevant=True)] * relevant + [FeedbackSample(relevant=False)] * irrelevant


class TestUpdateFromFeedback:
    """Test override updates."""

    def test_too_few_samples(self, now):
        learner = _learner()

        assert learner.update_from_feedback("ewma", _samples(2, 3), now=now) is None
        assert learner.get_overrides() == {}

    def test_low_precision_raises_threshold(self, now):
        learner = _learner()

        override = learner.update_from_feedback("ewma", _samples(10, 20), now=now)

        assert override.adjustment_value == pytest.approx(0.05)
        assert override.confidence_level == pytest.approx(0.6)
        assert override.sample_size == 30
        assert override.ppv == pytest.approx(1 / 3)
        assert learner.get_override("ewma") == override

    def test_small_batches_take_half_steps(self, now):
        override = _learner().update_from_feedback("ewma", _samples(2, 10), now=now)

        assert override.adjustment_value == pytest.approx(0.025)

    def test_high_precision_lowers_threshold(self, now):
        override = _learner().update_from_feedback("burst", _samples(30, 0), now=now)

        assert override.adjustment_value == pytest.approx(-0.05)

    def test_adjustment_is_bounded(self, now):
        learner = _learner()
        for _ in range(10):
            override = learner.update_from_feedback("cusum", _samples(0, 30), now=now)

        assert override.adjustment_value == pytest.approx(0.25)

    def test_on_target_leaves_existing_override(self, now):
        learner = _learner()
        first = learner.update_from_feedback("beta", _samples(0, 30), now=now)

        # ppv 0.75 is inside the target band and fpr 0.25 is below the ceiling
        second = learner.update_from_feedback("beta", _samples(30, 10), now=now)

        assert second == first

    def test_baseline_threshold_is_kept(self, now):
        learner = _learner()
        learner.update_from_feedback("tau_u", _samples(0, 30), baseline_threshold=0.4, now=now)

        override = learner.update_from_feedback("tau_u", _samples(0, 30), now=now)

        assert override.baseline_threshold == 0.4
        assert override.adjustment_value == pytest.approx(0.1)

    def test_seeded_exploration_is_reproducible(self, now):
        first = _learner(epsilon=1.0, seed=7).update_from_feedback("ewma", _samples(15, 15), now=now)
        second = _learner(epsilon=1.0, seed=7).update_from_feedback("ewma", _samples(15, 15), now=now)

        assert first.adjustment_value == second.adjustment_value
        assert abs(first.adjustment_value) == pytest.approx(0.05)


def test_reset_removes_overrides(now):
    learner = _learner()
    learner.update_from_feedback("ewma", _samples(0, 30), now=now)
    learner.update_from_feedback("cusum", _samples(0, 30), now=now)

    learner.reset("ewma")
    assert set(learner.get_overrides()) == {"cusum"}

    learner.reset()
    assert learner.get_overrides() == {}


def test_summarize_feedback_uses_rating_fallback():
    samples = [
        FeedbackSample(relevant=True),
        FeedbackSample(rating=5),
        FeedbackSample(rating=1),
        FeedbackSample(rating=3),
        FeedbackSample(),
    ]

    summary = summarize_feedback(samples)

    assert summary["ppv"] == pytest.approx(2 / 3)
    assert summary["fpr"] == pytest.approx(1 / 3)
    assert summary["feedback_ratio"] == pytest.approx(3 / 5)


def test_samples_from_telemetry_groups_by_detector():
    entries = [
        AlertTelemetryEntry(
            alert_id="alert_1",
            detector_types=["ewma", "cusum"],
            applied_thresholds={"ewma": 0.6, "cusum": 0.55},
            feedback=AlertFeedback(relevant=True),
        ),
        AlertTelemetryEntry(alert_id="alert_2", detector_types=["ewma"], feedback=AlertFeedback(rating=1)),
        AlertTelemetryEntry(alert_id="alert_3", detector_types=["ewma"]),
    ]

    grouped = samples_from_telemetry(entries)

    assert len(grouped["ewma"]) == 2
    assert grouped["cusum"][0].threshold_applied == 0.55
    assert set(samples_from_telemetry(entries, detector_type="cusum")) == {"cusum"}
