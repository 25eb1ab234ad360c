"""
Threshold application shared by every detector call.

A raw detector score is rescaled by how far the applied threshold moved from
the baseline threshold:

    baseline  = explicit override, learned baseline, configured default, built-in default
    learned   = baseline * (1 + learned adjustment)
    applied   = experiment variant mapping of ``learned``
    score     = clamp01(raw / (applied / baseline))

A higher applied threshold therefore never raises a contributed score.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from studentalerts.anomaly.schema import (
    AlertKind,
    DetectorResult,
    ThresholdAdjustmentTrace,
    is_valid_detector_result,
)
from studentalerts.anomaly.statistics import clamp01
from studentalerts.core.config import (
    DEFAULT_DETECTOR_THRESHOLDS,
    FALLBACK_DETECTOR_THRESHOLD,
    DetectorThresholds,
)
from studentalerts.learning.experiments import ExperimentService
from studentalerts.learning.schema import ThresholdOverride

from .schema import ThresholdContext

logger = logging.getLogger(__name__)

EXPERIMENT_KEYS: Dict[AlertKind, str] = {
    AlertKind.BEHAVIOR_SPIKE: "alerts.thresholds.behavior",
    AlertKind.CONTEXT_ASSOCIATION: "alerts.thresholds.context",
    AlertKind.INTERVENTION_DUE: "alerts.thresholds.intervention",
    AlertKind.DATA_QUALITY: "alerts.thresholds.dataquality",
}
GLOBAL_EXPERIMENT_KEY = "alerts.thresholds.global"


def experiment_key_for(kind: AlertKind) -> str:
    return EXPERIMENT_KEYS.get(kind, GLOBAL_EXPERIMENT_KEY)


def default_threshold(detector_type: str) -> float:
    return DEFAULT_DETECTOR_THRESHOLDS.get(detector_type, FALLBACK_DETECTOR_THRESHOLD)


class ThresholdApplicator:
    """
    Applies learned overrides and experiment variants to raw detector results.
    """

    def __init__(self, experiments: ExperimentService, thresholds: Optional[DetectorThresholds] = None):
        self.experiments = experiments
        self.thresholds = thresholds or DetectorThresholds()

    def context_for(
        self,
        kind: AlertKind,
        student_id: str,
        overrides: Dict[str, ThresholdOverride],
        now: Optional[datetime] = None,
    ) -> ThresholdContext:
        """Resolve the experiment arm for this kind (sticky) and start an empty trace."""
        experiment_key = experiment_key_for(kind)
        assignment = self.experiments.assign(experiment_key, student_id, now=now)
        return ThresholdContext(experiment_key=experiment_key, variant=assignment.variant, overrides=overrides)

    def baseline_threshold(
        self,
        detector_type: str,
        override: Optional[ThresholdOverride] = None,
        baseline_override: Optional[float] = None,
    ) -> float:
        if baseline_override is not None and baseline_override > 0:
            return float(baseline_override)
        if override is not None and override.baseline_threshold:
            return override.baseline_threshold
        configured = self.thresholds.for_detector(detector_type)
        return configured if configured > 0 else default_threshold(detector_type)

    def apply(
        self,
        detector_type: str,
        raw: Optional[DetectorResult],
        context: ThresholdContext,
        baseline_override: Optional[float] = None,
    ) -> Optional[DetectorResult]:
        """
        Rescale ``raw`` against the applied threshold and record the trace.

        Returns:
            Adjusted result, or None when there is no raw result or the adjusted
            result is out of range
        """
        if not is_valid_detector_result(raw):
            return None

        fallback = default_threshold(detector_type)
        override = context.overrides.get(detector_type)
        base = self.baseline_threshold(detector_type, override, baseline_override)
        learned = base * (1.0 + override.adjustment_value) if override is not None else base

        applied = self.experiments.threshold_for_variant(
            context.experiment_key, context.variant, learned, default=fallback
        )
        if applied <= 0:
            applied = fallback

        score = clamp01(raw.score / (applied / base))
        context.traces[detector_type] = ThresholdAdjustmentTrace(
            adjustment=(applied - base) / base,
            applied_threshold=applied,
            baseline_threshold=base,
        )

        update = {"score": score, "threshold_applied": applied}
        if raw.analysis is not None:
            update["analysis"] = raw.analysis.model_copy(
                update={
                    "detector_type": detector_type,
                    "experiment_key": context.experiment_key,
                    "variant": context.variant,
                }
            )
        adjusted = DetectorResult.model_validate(raw.model_copy(update=update).model_dump())

        if not is_valid_detector_result(adjusted):
            logger.debug(f"{detector_type}: adjusted result out of range, dropped")
            return None
        return adjusted
