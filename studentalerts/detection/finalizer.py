"""
Aggregation and finalization of alert candidates.

``ResultAggregator`` turns a candidate's detector results into one weighted
score and severity; ``AlertFinalizer`` builds the ``AlertEvent`` with a
deterministic id, a time-independent dedupe key and display metadata.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from studentalerts.anomaly.schema import AlertEvent, AlertKind, AlertStatus, TrendPoint, is_valid_detector_result
from studentalerts.anomaly.scoring import SeverityMapper, combine_scores, rank_sources, recency_score
from studentalerts.anomaly.statistics import clamp01
from studentalerts.core.config import ScoringConfig, SeriesConfig, config

from .schema import AggregatedResult, AlertCandidate
from .series import truncate_series

ALERT_ID_PREFIX = "alert_"
HASH_LENGTH = 16


def _digest(raw: str) -> str:
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def epoch_millis(ts: datetime) -> int:
    return int(round(ts.timestamp() * 1000))


def build_alert_id(student_id: str, kind: AlertKind, label: str, last_timestamp: datetime) -> str:
    """Identical (student, kind, label, last timestamp) always yields the same id."""
    kind_value = kind.value if isinstance(kind, AlertKind) else str(kind)
    return ALERT_ID_PREFIX + _digest(f"{student_id}|{kind_value}|{label}|{epoch_millis(last_timestamp)}")


def build_dedupe_key(student_id: str, kind: AlertKind, label: str) -> str:
    kind_value = kind.value if isinstance(kind, AlertKind) else str(kind)
    return _digest(f"{student_id}|{kind_value}|{label}")


def series_stats(series: Sequence[TrendPoint]) -> Dict[str, float]:
    """min, max, mean and sample variance of the finite values (zeros when empty)."""
    values = [p.value for p in series if math.isfinite(p.value)]
    if not values:
        return {"min": 0.0, "max": 0.0, "mean": 0.0, "variance": 0.0}
    n = len(values)
    mean = sum(values) / n
    variance = sum((v - mean) ** 2 for v in values) / (n - 1) if n > 1 else 0.0
    return {"min": min(values), "max": max(values), "mean": mean, "variance": variance}


def sparkline(series: Sequence[TrendPoint], limit: int) -> Dict[str, List]:
    """Compact trend preview: last ``limit`` points, timestamps in epoch millis."""
    recent = truncate_series(list(series), limit)
    return {
        "values": [p.value for p in recent],
        "timestamps": [epoch_millis(p.timestamp) for p in recent],
    }


@dataclass
class ResultAggregator:
    """
    Weighted aggregate of impact, confidence, recency and tier.
    """

    scoring: ScoringConfig

    def __post_init__(self) -> None:
        self._severity = SeverityMapper(self.scoring)

    def aggregate(self, candidate: AlertCandidate, now: datetime) -> AggregatedResult:
        valid = [d for d in candidate.detectors if is_valid_detector_result(d)]
        impact = max((d.score for d in valid), default=0.0)
        confidence = max((d.confidence for d in valid), default=0.0)
        recency = recency_score(candidate.last_timestamp, now, self.scoring.recency_horizon_hours) if valid else 0.0
        tier = clamp01(candidate.tier) if valid else 0.0
        score = combine_scores(impact, confidence, recency, tier, self.scoring) if valid else 0.0

        return AggregatedResult(
            impact=impact,
            confidence=confidence,
            recency=recency,
            tier=tier,
            aggregate_score=score,
            severity=self._severity.severity(score),
            ranked_sources=rank_sources(valid, limit=self.scoring.max_ranked_sources),
        )


class AlertFinalizer:
    """
    Builds emitted ``AlertEvent`` records from aggregated candidates.
    """

    def __init__(self, series_settings: Optional[SeriesConfig] = None):
        self.series_settings = series_settings or config.alerts.series

    def finalize(self, candidate: AlertCandidate, aggregated: AggregatedResult, student_id: str) -> AlertEvent:
        stats = series_stats(candidate.series)
        preview = sparkline(candidate.series, self.series_settings.preview_limit)
        traces = {k: t.model_dump() for k, t in candidate.threshold_traces.items()}
        ranks = [s.details.get("rank") for s in aggregated.ranked_sources if s.details.get("rank")]

        metadata = {
            "label": candidate.label,
            "context_key": candidate.label,
            **candidate.metadata,
            "summary": aggregated.ranked_sources[0].label if aggregated.ranked_sources else candidate.label,
            "spark_values": preview["values"],
            "spark_timestamps": preview["timestamps"],
            "score": aggregated.aggregate_score,
            "impact": aggregated.impact,
            "recency": aggregated.recency,
            "tier": aggregated.tier,
            "score_breakdown": aggregated.score_breakdown,
            "source_ranks": ranks,
            "threshold_overrides": {k: t["adjustment"] for k, t in traces.items()},
            "threshold_trace": traces,
            "experiment_key": candidate.experiment_key,
            "experiment_variant": candidate.experiment_variant,
            "detector_types": list(candidate.detector_types),
            "series_stats": stats,
        }

        return AlertEvent(
            id=build_alert_id(student_id, candidate.kind, candidate.label, candidate.last_timestamp),
            student_id=student_id,
            kind=candidate.kind,
            severity=aggregated.severity,
            confidence=clamp01(aggregated.confidence),
            created_at=candidate.last_timestamp,
            status=AlertStatus.NEW,
            dedupe_key=build_dedupe_key(student_id, candidate.kind, candidate.label),
            sources=aggregated.ranked_sources,
            metadata=metadata,
        )
