"""
Adaptive per-detector threshold adjustments learned from alert feedback.

Each detector type owns a single ``ThresholdOverride`` record. Feedback is
summarized into precision (PPV) and false-positive rate; the override then moves
one step toward the target precision, with occasional random exploration.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from studentalerts.anomaly.statistics import clamp
from studentalerts.core.config import LearnerConfig, config
from studentalerts.storage.repositories import KeyValueStore, ModelRepository

from .schema import AlertTelemetryEntry, FeedbackSample, ThresholdOverride

logger = logging.getLogger(__name__)

OVERRIDE_PREFIX = "threshold-override"
FULL_STEP_SAMPLES = 25
CONFIDENCE_SATURATION_SAMPLES = 50
PPV_LOW_MARGIN = 0.03
MIN_PERSISTED_CHANGE = 1e-3


class ThresholdLearner:
    """
    Owns threshold overrides keyed by detector type.

    Args:
        store: backend for override records
        settings: learner tuning (defaults to global config)
        rng: source of exploration randomness; inject a seeded ``random.Random``
            for reproducible behavior
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[LearnerConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository: ModelRepository[ThresholdOverride] = ModelRepository(store, ThresholdOverride, OVERRIDE_PREFIX)
        self.settings = settings or config.alerts.learner
        self.rng = rng or random.Random()

    def get_override(self, detector_type: str) -> Optional[ThresholdOverride]:
        return self.repository.get(detector_type)

    def get_overrides(self) -> Dict[str, ThresholdOverride]:
        return {o.detector_type: o for o in self.repository.all()}

    def reset(self, detector_type: Optional[str] = None) -> None:
        keys = [detector_type] if detector_type else self.repository.keys()
        for key in keys:
            self.repository.delete(key)
        logger.info(f"Reset threshold overrides: {', '.join(keys) or 'none'}")

    def update_from_feedback(
        self,
        detector_type: str,
        samples: Sequence[FeedbackSample],
        baseline_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ThresholdOverride]:
        """
        Move the detector's override one step based on feedback.

        Returns the (possibly unchanged) override, or None when there is neither
        enough feedback nor an existing override.
        """
        existing = self.get_override(detector_type)
        if len(samples) < self.settings.min_samples:
            logger.debug(f"{detector_type}: {len(samples)} samples, need {self.settings.min_samples}")
            return existing

        summary = summarize_feedback(samples)
        direction = self._direction(summary["ppv"], summary["fpr"])
        scale = 1.0 if len(samples) >= FULL_STEP_SAMPLES else 0.5
        current = existing.adjustment_value if existing else 0.0
        limit = self.settings.max_adjustment
        proposed = clamp(current + direction * self.settings.step * scale, -limit, limit)

        if existing is not None and abs(proposed - current) < MIN_PERSISTED_CHANGE:
            return existing

        if baseline_threshold is None and existing is not None:
            baseline_threshold = existing.baseline_threshold

        override = ThresholdOverride(
            detector_type=detector_type,
            adjustment_value=proposed,
            confidence_level=min(1.0, len(samples) / CONFIDENCE_SATURATION_SAMPLES),
            last_updated_at=now or datetime.now(timezone.utc),
            baseline_threshold=baseline_threshold,
            sample_size=len(samples),
            ppv=summary["ppv"],
            false_positive_rate=summary["fpr"],
        )
        self.repository.put(detector_type, override)
        logger.info(
            f"{detector_type}: adjustment {current:+.3f} -> {proposed:+.3f} "
            f"(ppv={summary['ppv']:.2f}, fpr={summary['fpr']:.2f}, n={len(samples)})"
        )
        return override

    def _direction(self, ppv: float, fpr: float) -> int:
        if self.rng.random() < self.settings.epsilon:
            return self.rng.choice((-1, 1))
        if ppv < self.settings.target_ppv - PPV_LOW_MARGIN:
            return 1
        if ppv > self.settings.ppv_high:
            return -1
        if fpr > self.settings.fpr_ceiling:
            return 1
        return 0


def summarize_feedback(samples: Iterable[FeedbackSample]) -> Dict[str, float]:
    """
    Precision and false-positive rate over samples with explicit relevance.

    Samples without a relevance flag fall back to rating (>= 4 relevant,
    <= 2 irrelevant); the rest are ignored.
    """
    positives = 0
    negatives = 0
    total = 0
    for sample in samples:
        total += 1
        relevant = sample.relevant
        if relevant is None and sample.rating is not None:
            if sample.rating >= 4:
                relevant = True
            elif sample.rating <= 2:
                relevant = False
        if relevant is True:
            positives += 1
        elif relevant is False:
            negatives += 1

    considered = positives + negatives
    return {
        "ppv": positives / considered if considered else 0.0,
        "fpr": negatives / considered if considered else 0.0,
        "feedback_ratio": considered / total if total else 0.0,
    }


def samples_from_telemetry(
    entries: Iterable[AlertTelemetryEntry],
    detector_type: Optional[str] = None,
) -> Dict[str, List[FeedbackSample]]:
    """
    Group feedback samples by detector type.

    Only entries that carry feedback are used; when ``detector_type`` is given
    only that type is returned.
    """
    grouped: Dict[str, List[FeedbackSample]] = {}
    for entry in entries:
        if entry.feedback is None:
            continue
        for dtype in entry.detector_types:
            if detector_type and dtype != detector_type:
                continue
            grouped.setdefault(dtype, []).append(
                FeedbackSample(
                    relevant=entry.feedback.relevant,
                    rating=entry.feedback.rating,
                    predicted_relevance=entry.predicted_relevance,
                    threshold_applied=entry.applied_thresholds.get(dtype),
                    created_at=entry.created_at,
                )
            )
    return grouped
