"""
Tau-U non-overlap analysis for intervention outcomes.

Compares a baseline phase (A: measurements before the intervention started)
with the intervention phase (B) using pairwise non-overlap, corrected for a
monotonic trend already present in phase A.

``TauUOutcomeDetector`` is the default implementation of the injectable
intervention-outcome capability consumed by the candidate generator. The
orchestrator works without it; that candidate category is then skipped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from studentalerts.data.schema import Goal, Intervention

from .schema import AlertSource, DetectorResult, PhaseSummary, TauUAnalysis
from .statistics import clamp, median, normal_cdf

MIN_PHASE_POINTS = 5


class InterventionOutcomeDetector(Protocol):
    """Capability: score an intervention against its linked goal (or None)."""

    def __call__(self, intervention: Intervention, goal: Optional[Goal]) -> Optional[DetectorResult]:
        ...


@dataclass
class PhaseData:
    phase_a: List[float]
    phase_b: List[float]
    timestamps_a: List[datetime] = field(default_factory=list)
    timestamps_b: List[datetime] = field(default_factory=list)


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _summary(values: List[float]) -> PhaseSummary:
    return PhaseSummary(
        count=len(values),
        mean=sum(values) / len(values) if values else 0.0,
        median=median(values),
        values=list(values),
    )


class TauUEvaluator:
    """
    Computes Tau-U (A vs B, trend-corrected) and classifies the outcome.
    """

    def __init__(
        self,
        min_effect: float = 0.2,
        max_p_value: float = 0.1,
        baseline_window_days: int = 60,
    ):
        self.min_effect = min_effect
        self.max_p_value = max_p_value
        self.baseline_window_days = baseline_window_days

    def compute(self, phase_a: List[float], phase_b: List[float]) -> Optional[TauUAnalysis]:
        baseline = [float(v) for v in phase_a if v is not None and math.isfinite(v)]
        treatment = [float(v) for v in phase_b if v is not None and math.isfinite(v)]
        if len(baseline) < MIN_PHASE_POINTS or len(treatment) < MIN_PHASE_POINTS:
            return None

        comparisons = len(baseline) * len(treatment)
        s = 0
        ties = 0
        for a in baseline:
            for b in treatment:
                sign = _sign(b - a)
                s += sign
                if sign == 0:
                    ties += 1

        trend = self.baseline_trend(baseline)
        adjusted = s - trend
        effect_size = adjusted / comparisons

        n_a, n_b = len(baseline), len(treatment)
        variance = n_a * n_b * (n_a + n_b + 1) / 3.0
        z = adjusted / math.sqrt(variance) if variance > 0 else 0.0
        p_value = clamp(2.0 * (1.0 - normal_cdf(abs(z))), 0.0, 1.0)

        return TauUAnalysis(
            effect_size=effect_size,
            p_value=p_value,
            outcome=self.classify(effect_size, p_value),
            comparisons=comparisons,
            trend_adjustment=float(trend),
            ties=ties,
            improvement_probability=(s + comparisons) / (2.0 * comparisons),
            phase_a=_summary(baseline),
            phase_b=_summary(treatment),
        )

    @staticmethod
    def baseline_trend(values: List[float]) -> int:
        """Kendall-style S statistic within phase A (sum of sign(a_j - a_i), i < j)."""
        trend = 0
        for i in range(len(values)):
            for j in range(i + 1, len(values)):
                trend += _sign(values[j] - values[i])
        return trend

    def classify(self, effect_size: float, p_value: float) -> str:
        if effect_size >= self.min_effect and p_value <= self.max_p_value:
            return "improving"
        if effect_size <= -self.min_effect and p_value <= self.max_p_value:
            return "worsening"
        return "no_change"

    def extract_phases(self, intervention: Intervention, goal: Optional[Goal]) -> Optional[PhaseData]:
        """
        Split goal measurements and intervention effectiveness ratings into A/B.

        Phase A keeps points within ``baseline_window_days`` before the
        implementation date; phase B everything from the implementation date on.
        """
        start = intervention.implementation_date
        if start is None:
            return None
        window = timedelta(days=self.baseline_window_days)

        points: List[Tuple[datetime, float]] = []
        if goal is not None:
            points.extend((p.timestamp, p.value) for p in goal.data_points)
        points.extend((p.timestamp, p.effectiveness) for p in intervention.data_collection)

        phase_a: List[Tuple[datetime, float]] = []
        phase_b: List[Tuple[datetime, float]] = []
        for ts, value in points:
            if value is None or not math.isfinite(value):
                continue
            if ts >= start:
                phase_b.append((ts, value))
            elif start - ts <= window:
                phase_a.append((ts, value))

        if len(phase_a) < MIN_PHASE_POINTS or len(phase_b) < MIN_PHASE_POINTS:
            return None

        phase_a.sort(key=lambda p: p[0])
        phase_b.sort(key=lambda p: p[0])
        return PhaseData(
            phase_a=[v for _, v in phase_a],
            phase_b=[v for _, v in phase_b],
            timestamps_a=[t for t, _ in phase_a],
            timestamps_b=[t for t, _ in phase_b],
        )


class TauUOutcomeDetector:
    """
    Default intervention-outcome capability backed by ``TauUEvaluator``.
    """

    def __init__(self, evaluator: Optional[TauUEvaluator] = None):
        self.evaluator = evaluator or TauUEvaluator()

    def __call__(self, intervention: Intervention, goal: Optional[Goal]) -> Optional[DetectorResult]:
        phases = self.evaluator.extract_phases(intervention, goal)
        if phases is None:
            return None
        analysis = self.evaluator.compute(phases.phase_a, phases.phase_b)
        if analysis is None:
            return None

        analysis.phase_a_timestamps = phases.timestamps_a
        analysis.phase_b_timestamps = phases.timestamps_b
        analysis.intervention_id = intervention.id
        analysis.goal_id = goal.id if goal is not None else None

        headline = {
            "improving": "Intervention shows improving trend",
            "worsening": "Outcome trending down",
        }.get(analysis.outcome, "Outcome stable")

        return DetectorResult(
            score=min(1.0, abs(analysis.effect_size)),
            confidence=max(0.05, 1.0 - analysis.p_value),
            impact_hint=headline,
            analysis=analysis,
            sources=[
                AlertSource(
                    label=intervention.title or "Tau-U intervention analysis",
                    details={
                        "outcome": analysis.outcome,
                        "effect_size": analysis.effect_size,
                        "p_value": analysis.p_value,
                        "comparisons": analysis.comparisons,
                        "improvement_probability": analysis.improvement_probability,
                    },
                )
            ],
        )
