"""
Candidate generation: run detectors over a student's series and group the
surviving results into alert candidates.

Categories:
- emotion spikes (EWMA + CUSUM per emotion category)
- sensory rate shifts (Beta-Binomial per behavior)
- environmental associations (noise vs. peak emotion)
- intensity bursts
- intervention outcomes (only with an injected outcome detector)

Every detector call is wrapped: a failure is logged and contributes nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from studentalerts.anomaly.baselines import BaselineService
from studentalerts.anomaly.detectors import (
    AssociationDetector,
    BetaRateDetector,
    BurstDetector,
    CUSUMShiftDetector,
    EWMATrendDetector,
)
from studentalerts.anomaly.schema import (
    AlertKind,
    BetaPrior,
    BurstEvent,
    DetectorResult,
    StudentBaseline,
    TauUAnalysis,
    TrendPoint,
    is_valid_detector_result,
)
from studentalerts.anomaly.statistics import IQR_NORMAL_SCALE
from studentalerts.anomaly.tau_u import InterventionOutcomeDetector
from studentalerts.core.config import AlertsConfig, config
from studentalerts.core.exceptions import DetectorExecutionError
from studentalerts.data.schema import Goal, Intervention
from studentalerts.learning.schema import ThresholdOverride

from .schema import AlertCandidate, ThresholdContext
from .series import AssociationDataset, SensoryAggregate
from .thresholds import ThresholdApplicator

logger = logging.getLogger(__name__)

ANALYSED_INTERVENTION_STATUSES = ("active", "completed")
UNIFORM_RATE_PRIOR = BetaPrior(alpha=1.0, beta=1.0)


class CandidateGenerator:
    """
    Builds the five candidate categories for one student run.

    Args:
        applicator: threshold application (learned overrides + experiment arms)
        baselines: baseline lookups (window preference)
        settings: pipeline configuration (defaults to global config)
        outcome_detector: optional intervention-outcome capability
    """

    def __init__(
        self,
        applicator: ThresholdApplicator,
        baselines: BaselineService,
        settings: Optional[AlertsConfig] = None,
        outcome_detector: Optional[InterventionOutcomeDetector] = None,
    ):
        self.applicator = applicator
        self.baselines = baselines
        self.settings = settings or config.alerts
        self.outcome_detector = outcome_detector

        ewma = self.settings.ewma
        cusum = self.settings.cusum
        series = self.settings.series
        self.ewma = EWMATrendDetector(
            lam=ewma.lam,
            min_points=ewma.min_points,
            target_false_alert_interval=ewma.target_false_alert_interval,
            sustained_required=ewma.sustained_required,
            recent_window=ewma.recent_window,
        )
        self.cusum = CUSUMShiftDetector(
            k_factor=cusum.k_factor,
            decision_interval=cusum.decision_interval,
            min_points=cusum.min_points,
            sided=cusum.sided,
            target_false_alert_interval=ewma.target_false_alert_interval,
        )
        self.beta = BetaRateDetector()
        self.association = AssociationDetector(min_support=series.min_association_support)
        self.burst = BurstDetector(window_minutes=series.burst_window_minutes, min_events=series.burst_min_events)

    def safe_detect(self, detector_type: str, fn: Callable[[], Optional[DetectorResult]]) -> Optional[DetectorResult]:
        try:
            return fn()
        except Exception as e:
            error = DetectorExecutionError(detector_type, e)
            logger.warning(f"{error}; skipping")
            return None

    @staticmethod
    def detection_quality(detectors: Sequence[DetectorResult], series: Sequence[TrendPoint]) -> Dict[str, float]:
        valid = [d for d in detectors if is_valid_detector_result(d)]
        return {
            "valid_detectors": len(valid),
            "avg_confidence": sum(d.confidence for d in valid) / len(valid) if valid else 0.0,
            "series_length": len(series),
        }

    def _candidate(
        self,
        kind: AlertKind,
        label: str,
        detectors: List[DetectorResult],
        detector_types: List[str],
        series: List[TrendPoint],
        tier: float,
        context: ThresholdContext,
        now: datetime,
        metadata: Optional[Dict] = None,
    ) -> AlertCandidate:
        meta = dict(metadata or {})
        meta["detection_quality"] = self.detection_quality(detectors, series)
        return AlertCandidate(
            kind=kind,
            label=label,
            detectors=detectors,
            detector_types=detector_types,
            series=series,
            last_timestamp=series[-1].timestamp if series else now,
            tier=tier,
            metadata=meta,
            threshold_traces=dict(context.traces),
            experiment_key=context.experiment_key,
            experiment_variant=context.variant,
        )

    # ------------------------------------------------------------------ #
    # Categories
    # ------------------------------------------------------------------ #

    def emotion_candidates(
        self,
        emotion_series: Dict[str, List[TrendPoint]],
        baseline: Optional[StudentBaseline],
        student_id: str,
        overrides: Dict[str, ThresholdOverride],
        now: datetime,
    ) -> List[AlertCandidate]:
        candidates: List[AlertCandidate] = []
        quality = baseline.quality.reliability if baseline is not None and baseline.quality else None

        for key, series in emotion_series.items():
            stats = self.baselines.lookup_emotion(baseline, key)
            median = stats.median if stats else None
            iqr = stats.iqr if stats else None
            context = self.applicator.context_for(AlertKind.BEHAVIOR_SPIKE, student_id, overrides, now)
            detectors: List[DetectorResult] = []
            detector_types: List[str] = []

            ewma = self.applicator.apply(
                "ewma",
                self.safe_detect(
                    "ewma",
                    lambda: self.ewma.detect(
                        series, baseline_median=median, baseline_iqr=iqr, quality_score=quality, label=f"{key} EWMA"
                    ),
                ),
                context,
            )
            if ewma is not None:
                detectors.append(ewma)
                detector_types.append("ewma")

            sigma = iqr / IQR_NORMAL_SCALE if iqr else None
            cusum = self.applicator.apply(
                "cusum",
                self.safe_detect(
                    "cusum",
                    lambda: self.cusum.detect(
                        series, baseline_mean=median, baseline_sigma=sigma, quality_score=quality, label=f"{key} CUSUM"
                    ),
                ),
                context,
            )
            if cusum is not None:
                detectors.append(cusum)
                detector_types.append("cusum")

            if not detectors:
                continue

            candidates.append(
                self._candidate(
                    AlertKind.BEHAVIOR_SPIKE,
                    key,
                    detectors,
                    detector_types,
                    series,
                    tier=1.0 if len(detectors) >= 2 else 0.8,
                    context=context,
                    now=now,
                    metadata={
                        "emotion_key": key,
                        "detector_count": len(detectors),
                        "baseline_median": median,
                    },
                )
            )
        return candidates

    def sensory_candidates(
        self,
        aggregates: Dict[str, SensoryAggregate],
        baseline: Optional[StudentBaseline],
        student_id: str,
        overrides: Dict[str, ThresholdOverride],
        now: datetime,
    ) -> List[AlertCandidate]:
        candidates: List[AlertCandidate] = []
        for key, agg in aggregates.items():
            stats = self.baselines.lookup_sensory(baseline, key)
            prior = stats.rate_prior if stats else UNIFORM_RATE_PRIOR
            context = self.applicator.context_for(AlertKind.BEHAVIOR_SPIKE, student_id, overrides, now)

            beta = self.applicator.apply(
                "beta",
                self.safe_detect(
                    "beta",
                    lambda: self.beta.detect(
                        agg.successes, agg.trials, baseline_prior=prior, delta=agg.delta, label=f"{key} rate shift"
                    ),
                ),
                context,
            )
            if beta is None:
                continue

            candidates.append(
                self._candidate(
                    AlertKind.BEHAVIOR_SPIKE,
                    key,
                    [beta],
                    ["beta"],
                    agg.series,
                    tier=0.9,
                    context=context,
                    now=now,
                    metadata={"sensory_key": key, "successes": agg.successes, "trials": agg.trials},
                )
            )
        return candidates

    def association_candidates(
        self,
        dataset: Optional[AssociationDataset],
        student_id: str,
        overrides: Dict[str, ThresholdOverride],
        now: datetime,
    ) -> List[AlertCandidate]:
        if dataset is None:
            return []

        context = self.applicator.context_for(AlertKind.CONTEXT_ASSOCIATION, student_id, overrides, now)
        association = self.applicator.apply(
            "association",
            self.safe_detect(
                "association",
                lambda: self.association.detect(
                    dataset.contingency,
                    series_x=dataset.series_x,
                    series_y=dataset.series_y,
                    label=dataset.label,
                    context=dataset.context,
                ),
            ),
            context,
        )
        if association is None:
            return []

        series = [TrendPoint(ts, value) for ts, value in zip(dataset.timestamps, dataset.series_x)]
        return [
            self._candidate(
                AlertKind.CONTEXT_ASSOCIATION,
                dataset.label,
                [association],
                ["association"],
                series,
                tier=0.85,
                context=context,
                now=now,
                metadata={"contingency": dict(dataset.contingency), "context": dict(dataset.context)},
            )
        ]

    def burst_candidates(
        self,
        events: List[BurstEvent],
        student_id: str,
        overrides: Dict[str, ThresholdOverride],
        now: datetime,
    ) -> List[AlertCandidate]:
        if not events:
            return []

        context = self.applicator.context_for(AlertKind.BEHAVIOR_SPIKE, student_id, overrides, now)
        burst = self.applicator.apply(
            "burst",
            self.safe_detect("burst", lambda: self.burst.detect(events, label="High-intensity episode")),
            context,
        )
        if burst is None:
            return []

        series = [TrendPoint(e.timestamp, e.value) for e in events]
        event_count = burst.analysis.event_count if burst.analysis is not None else len(events)
        return [
            self._candidate(
                AlertKind.BEHAVIOR_SPIKE,
                "High intensity burst",
                [burst],
                ["burst"],
                series,
                tier=1.0,
                context=context,
                now=now,
                metadata={"event_count": event_count},
            )
        ]

    def intervention_candidates(
        self,
        interventions: Sequence[Intervention],
        goals: Sequence[Goal],
        student_id: str,
        overrides: Dict[str, ThresholdOverride],
        now: datetime,
    ) -> List[AlertCandidate]:
        """
        Intervention outcome candidates; empty without an outcome detector.

        Outcomes with |effect| below the configured minimum are discarded.
        """
        if self.outcome_detector is None or not interventions:
            return []

        goals_by_id = {g.id: g for g in goals}
        baseline_threshold = self.settings.thresholds.for_detector("tau_u")
        min_effect = self.settings.series.tau_u_min_effect
        candidates: List[AlertCandidate] = []

        for intervention in interventions:
            if intervention.status and intervention.status.lower() not in ANALYSED_INTERVENTION_STATUSES:
                continue
            goal = next((g for g in goals if intervention.id in g.interventions), None)
            if goal is None and intervention.related_goals:
                goal = goals_by_id.get(intervention.related_goals[0])

            context = self.applicator.context_for(AlertKind.INTERVENTION_DUE, student_id, overrides, now)
            detector = self.applicator.apply(
                "tau_u",
                self.safe_detect("tau_u", lambda: self.outcome_detector(intervention, goal)),
                context,
                baseline_override=baseline_threshold,
            )
            if detector is None or not isinstance(detector.analysis, TauUAnalysis):
                continue
            analysis = detector.analysis
            if abs(analysis.effect_size) < min_effect:
                continue

            series = self._phase_series(analysis)
            label = intervention.title or f"Intervention review ({intervention.id})"
            candidates.append(
                self._candidate(
                    AlertKind.INTERVENTION_DUE,
                    label,
                    [detector],
                    ["tau_u"],
                    series,
                    tier=1.0,
                    context=context,
                    now=now,
                    metadata={
                        "intervention_id": intervention.id,
                        "intervention_label": intervention.title,
                        "goal_id": goal.id if goal is not None else None,
                        "phase_label": analysis.outcome,
                        "effect_size": analysis.effect_size,
                        "p_value": analysis.p_value,
                        "detector_count": 1,
                    },
                )
            )
        return candidates

    @staticmethod
    def _phase_series(analysis: TauUAnalysis) -> List[TrendPoint]:
        points: List[TrendPoint] = []
        for values, stamps in (
            (analysis.phase_a.values, analysis.phase_a_timestamps),
            (analysis.phase_b.values, analysis.phase_b_timestamps),
        ):
            points.extend(TrendPoint(ts, value) for ts, value in zip(stamps, values))
        points.sort(key=lambda p: p.timestamp)
        return points
