"""
Scoring and severity mapping for alerts.

Combines detector evidence, recency and category tier into one aggregate score
and maps it to a severity with configurable cut points.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

from studentalerts.core.config import ScoringConfig

from .schema import AlertSeverity, AlertSource, DetectorResult
from .statistics import clamp01

SOURCE_RANK_LABELS = ("S1", "S2", "S3", "S4", "S5")


@dataclass
class SeverityMapper:
    """
    Maps an aggregate score to a severity level.
    """

    scoring: ScoringConfig

    def severity(self, score: float) -> AlertSeverity:
        if score >= self.scoring.severity_critical:
            return AlertSeverity.CRITICAL
        if score >= self.scoring.severity_important:
            return AlertSeverity.IMPORTANT
        if score >= self.scoring.severity_moderate:
            return AlertSeverity.MODERATE
        return AlertSeverity.LOW


def recency_score(last_timestamp: datetime, now: datetime, horizon_hours: float) -> float:
    """
    Exponential decay of elapsed time: 1.0 at zero elapsed, toward 0 over the horizon.

    Future timestamps count as zero elapsed.
    """
    elapsed_hours = max(0.0, (now - last_timestamp).total_seconds() / 3600.0)
    if horizon_hours <= 0:
        return 1.0 if elapsed_hours == 0 else 0.0
    return clamp01(math.exp(-elapsed_hours / horizon_hours))


def combine_scores(
    impact: float,
    confidence: float,
    recency: float,
    tier: float,
    scoring: ScoringConfig,
) -> float:
    """
    Weighted aggregate of impact, confidence, recency and tier, clamped to [0, 1].
    """
    score = (
        scoring.impact_weight * impact
        + scoring.confidence_weight * confidence
        + scoring.recency_weight * recency
        + scoring.tier_weight * tier
    )
    return clamp01(score)


def rank_sources(detectors: Sequence[DetectorResult], limit: int = 3) -> List[AlertSource]:
    """
    Flatten detector sources ordered by the owning detector's score x confidence.

    Keeps the top ``limit`` and annotates ``details["rank"]`` as S1, S2, ...
    Ties keep detector order, so the ranking is deterministic.
    """
    weighted = []
    for order, detector in enumerate(detectors):
        contribution = detector.score * detector.confidence
        for source in detector.sources:
            weighted.append((contribution, order, source))
    weighted.sort(key=lambda item: (-item[0], item[1]))

    ranked: List[AlertSource] = []
    for idx, (contribution, _, source) in enumerate(weighted[:limit]):
        details = dict(source.details)
        details["rank"] = SOURCE_RANK_LABELS[idx] if idx < len(SOURCE_RANK_LABELS) else f"S{idx + 1}"
        details["contribution"] = contribution
        ranked.append(source.model_copy(update={"details": details}))
    return ranked
