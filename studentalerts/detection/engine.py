"""
Detection orchestrator.

Wires baselines, threshold learning, experiments, candidate generation,
aggregation, finalization and deduplication for one student per call.

Stages:
1. Validate input (empty student id -> no alerts)
2. Resolve baseline (input snapshot, else repository) and learned overrides
3. Build series and generate candidates per category
4. Aggregate, finalize, deduplicate

``run_detection`` never raises: a failing stage is logged and contributes
nothing, so the caller always gets an empty or partial list.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from studentalerts.anomaly.baselines import BaselineService
from studentalerts.anomaly.schema import AlertEvent, StudentBaseline
from studentalerts.anomaly.tau_u import InterventionOutcomeDetector
from studentalerts.core.config import AlertsConfig, config
from studentalerts.core.exceptions import StudentAlertsError
from studentalerts.data.ingestion import BaseObservationSource
from studentalerts.data.schema import EmotionObservation, SensoryObservation, TrackingSession
from studentalerts.learning.experiments import ExperimentService
from studentalerts.learning.learner import ThresholdLearner
from studentalerts.learning.schema import ThresholdOverride
from studentalerts.storage.repositories import InMemoryKeyValueStore, KeyValueStore

from .candidates import CandidateGenerator
from .finalizer import AlertFinalizer, ResultAggregator
from .policies import AlertPolicies
from .schema import AlertCandidate, DetectionInput
from .series import (
    build_association_dataset,
    build_burst_events,
    build_emotion_series,
    build_sensory_aggregates,
    clamp_series_limit,
)
from .thresholds import ThresholdApplicator

logger = logging.getLogger(__name__)


class DetectionEngine:
    """
    Alert detection pipeline over three independently injected stores.

    Args:
        baseline_store: per-student baseline records
        experiment_store: experiment definitions and sticky assignments
        threshold_store: learned per-detector threshold overrides
        settings: pipeline configuration (defaults to global config)
        outcome_detector: optional intervention-outcome capability; without it
            intervention candidates are never produced
    """

    def __init__(
        self,
        baseline_store: Optional[KeyValueStore] = None,
        experiment_store: Optional[KeyValueStore] = None,
        threshold_store: Optional[KeyValueStore] = None,
        settings: Optional[AlertsConfig] = None,
        outcome_detector: Optional[InterventionOutcomeDetector] = None,
        learner: Optional[ThresholdLearner] = None,
    ):
        self.settings = settings or config.alerts
        self.baselines = BaselineService(baseline_store or InMemoryKeyValueStore(), self.settings.baseline)
        self.experiments = ExperimentService(experiment_store or InMemoryKeyValueStore(), self.settings.experiments)
        self.learner = learner or ThresholdLearner(threshold_store or InMemoryKeyValueStore(), self.settings.learner)

        self.applicator = ThresholdApplicator(self.experiments, self.settings.thresholds)
        self.generator = CandidateGenerator(
            self.applicator, self.baselines, settings=self.settings, outcome_detector=outcome_detector
        )
        self.aggregator = ResultAggregator(self.settings.scoring)
        self.finalizer = AlertFinalizer(self.settings.series)
        self.policies = AlertPolicies()
        self.series_limit = clamp_series_limit(self.settings.series.series_limit)

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    def run_detection(self, detection_input: Union[DetectionInput, Dict[str, Any]]) -> List[AlertEvent]:
        """
        Run the full pipeline for one student.

        Returns:
            Deduplicated alerts (unordered); empty on invalid input
        """
        try:
            data = (
                detection_input
                if isinstance(detection_input, DetectionInput)
                else DetectionInput.model_validate(detection_input)
            )
        except ValidationError as e:
            logger.warning(f"Rejected detection input: {e.error_count()} error(s)")
            return []

        if not data.student_id:
            return []

        now = data.now or datetime.now(timezone.utc)
        logger.debug(f"Detection start for {data.student_id}")

        baseline = data.baseline if data.baseline is not None else self._load_baseline(data.student_id)
        overrides = self._load_overrides()
        candidates = self._build_candidates(data, baseline, overrides, now)

        alerts: List[AlertEvent] = []
        for candidate in candidates:
            try:
                aggregated = self.aggregator.aggregate(candidate, now)
                alerts.append(self.finalizer.finalize(candidate, aggregated, data.student_id))
            except Exception as e:
                logger.warning(f"Finalizing '{candidate.label}' ({candidate.kind.value}) failed: {e}")

        deduped = self.policies.deduplicate(alerts)
        logger.info(
            f"Detection for {data.student_id}: {len(candidates)} candidate(s), {len(deduped)} alert(s)"
        )
        return deduped

    def run_for_student(
        self,
        student_id: str,
        source: BaseObservationSource,
        now: Optional[datetime] = None,
        refresh_baseline: bool = False,
    ) -> List[AlertEvent]:
        """
        Pull a student's records from ``source`` and run detection.

        With ``refresh_baseline`` the stored baseline is recomputed first.
        """
        try:
            emotions = source.emotions_for(student_id)
            sensory = source.sensory_for(student_id)
            sessions = source.sessions_for(student_id)
            interventions = source.interventions_for(student_id)
            goals = source.goals_for(student_id)
        except StudentAlertsError as e:
            logger.error(f"Could not read observations for {student_id}: {e}")
            return []

        if refresh_baseline:
            self.refresh_baseline(student_id, emotions, sensory, sessions, now)

        return self.run_detection(
            DetectionInput(
                student_id=student_id,
                emotions=emotions,
                sensory=sensory,
                sessions=sessions,
                interventions=interventions,
                goals=goals,
                now=now,
            )
        )

    def refresh_baseline(
        self,
        student_id: str,
        emotions: List[EmotionObservation],
        sensory: List[SensoryObservation],
        sessions: List[TrackingSession],
        now: Optional[datetime] = None,
    ) -> Optional[StudentBaseline]:
        try:
            return self.baselines.update_baseline(student_id, emotions, sensory, sessions, now=now)
        except StudentAlertsError as e:
            logger.error(f"Baseline refresh for {student_id} failed: {e}")
            return None

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    def _load_baseline(self, student_id: str) -> Optional[StudentBaseline]:
        try:
            return self.baselines.get_baseline(student_id)
        except StudentAlertsError as e:
            logger.warning(f"Baseline lookup for {student_id} failed: {e}")
            return None

    def _load_overrides(self) -> Dict[str, ThresholdOverride]:
        try:
            return self.learner.get_overrides()
        except StudentAlertsError as e:
            logger.warning(f"Threshold overrides unavailable: {e}")
            return {}

    def _build_candidates(
        self,
        data: DetectionInput,
        baseline: Optional[StudentBaseline],
        overrides: Dict[str, ThresholdOverride],
        now: datetime,
    ) -> List[AlertCandidate]:
        series_cfg = self.settings.series
        sid = data.student_id
        stages = (
            (
                "emotion",
                lambda: self.generator.emotion_candidates(
                    build_emotion_series(data.emotions, self.series_limit), baseline, sid, overrides, now
                ),
            ),
            (
                "sensory",
                lambda: self.generator.sensory_candidates(
                    build_sensory_aggregates(data.sensory, self.series_limit, series_cfg.high_intensity),
                    baseline,
                    sid,
                    overrides,
                    now,
                ),
            ),
            (
                "association",
                lambda: self.generator.association_candidates(
                    build_association_dataset(
                        data.sessions,
                        high_noise=series_cfg.high_noise,
                        high_intensity=series_cfg.high_intensity,
                        min_support=series_cfg.min_association_support,
                    ),
                    sid,
                    overrides,
                    now,
                ),
            ),
            (
                "burst",
                lambda: self.generator.burst_candidates(
                    build_burst_events(
                        data.emotions,
                        data.sensory,
                        high_intensity=series_cfg.high_intensity,
                        pairing_seconds=series_cfg.burst_pairing_seconds,
                    ),
                    sid,
                    overrides,
                    now,
                ),
            ),
            (
                "intervention",
                lambda: self.generator.intervention_candidates(data.interventions, data.goals, sid, overrides, now),
            ),
        )

        candidates: List[AlertCandidate] = []
        for name, stage in stages:
            try:
                candidates.extend(stage())
            except Exception as e:
                logger.warning(f"{name} candidate stage failed for {sid}: {e}")
        return candidates


def run_detection(
    detection_input: Union[DetectionInput, Dict[str, Any]],
    engine: Optional[DetectionEngine] = None,
) -> List[AlertEvent]:
    """
    Run detection with ``engine``, or a fresh engine over in-memory stores.
    """
    return (engine or DetectionEngine()).run_detection(detection_input)
