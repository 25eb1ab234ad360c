"""
Unit tests for aggregate scoring, recency decay, severity mapping and source ranking.
"""

import math
from datetime import timedelta

import pytest

import studentalerts.anomaly as anomaly
from studentalerts.anomaly import scoring
from studentalerts.anomaly.schema import AlertSeverity, AlertSource, DetectorResult
from studentalerts.anomaly.scoring import SeverityMapper, combine_scores, rank_sources, recency_score
from studentalerts.core.config import ScoringConfig


@pytest.fixture
def scoring_config():
    return ScoringConfig()


@pytest.mark.parametrize(
    "score,expected",
    [
        (0.9, AlertSeverity.CRITICAL),
        (0.85, AlertSeverity.CRITICAL),
        (0.7, AlertSeverity.IMPORTANT),
        (0.6, AlertSeverity.MODERATE),
        (0.54, AlertSeverity.LOW),
    ],
)
def test_severity_cut_points(scoring_config, score, expected):
    assert SeverityMapper(scoring_config).severity(score) == expected


def test_custom_cut_points():
    mapper = SeverityMapper(ScoringConfig(severity_critical=0.95, severity_important=0.9, severity_moderate=0.8))

    assert mapper.severity(0.85) == AlertSeverity.MODERATE
    assert mapper.severity(0.5) == AlertSeverity.LOW


class TestRecency:
    """Test exponential recency decay."""

    def test_decays_over_horizon(self, now):
        assert recency_score(now, now, 24.0) == pytest.approx(1.0)
        assert recency_score(now - timedelta(hours=24), now, 24.0) == pytest.approx(math.exp(-1))

    def test_future_timestamp_counts_as_now(self, now):
        assert recency_score(now + timedelta(hours=3), now, 24.0) == pytest.approx(1.0)


def test_combine_scores_is_weighted_and_clamped(scoring_config):
    assert combine_scores(1.0, 0.0, 0.0, 0.0, scoring_config) == pytest.approx(0.4)
    assert combine_scores(1.0, 1.0, 1.0, 1.0, scoring_config) == pytest.approx(1.0)

    heavy = ScoringConfig(impact_weight=1.0, confidence_weight=1.0)
    assert combine_scores(1.0, 1.0, 0.0, 0.0, heavy) == 1.0


def test_rank_sources_orders_by_contribution():
    weak = DetectorResult(
        score=0.5,
        confidence=1.0,
        sources=[AlertSource(label="weak-1"), AlertSource(label="weak-2")],
    )
    strong = DetectorResult(score=0.9, confidence=1.0, sources=[AlertSource(label="strong")])

    ranked = rank_sources([weak, strong], limit=2)

    assert [s.label for s in ranked] == ["strong", "weak-1"]
    assert [s.details["rank"] for s in ranked] == ["S1", "S2"]
    assert ranked[0].details["contribution"] == pytest.approx(0.9)
    assert "rank" not in weak.sources[0].details


def test_package_exports_only_pipeline_scoring():
    exported = {name for name in anomaly.__all__ if getattr(anomaly, name).__module__ == scoring.__name__}

    assert exported == {"SeverityMapper", "combine_scores", "rank_sources", "recency_score"}
    assert not hasattr(scoring, "overall_severity")
