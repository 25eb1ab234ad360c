"""
Alert telemetry: lifecycle tracking, calibration and the feedback loop into
threshold learning.

Each emitted alert gets one ``AlertTelemetryEntry`` keyed by alert id. Consumers
report acknowledgement, resolution, snoozing and teacher feedback against that
id. Weekly reports summarize the entries created in a Sunday-to-Saturday UTC
week and feed the labelled ones to the ``ThresholdLearner``.

Only a hash of the student id is persisted.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from studentalerts.anomaly.schema import AlertEvent
from studentalerts.anomaly.statistics import clamp01, normal_cdf
from studentalerts.core.exceptions import DataValidationError
from studentalerts.storage.repositories import KeyValueStore, ModelRepository

from .experiments import ExperimentService
from .learner import ThresholdLearner, samples_from_telemetry
from .schema import (
    AlertFeedback,
    AlertTelemetryEntry,
    CalibrationMetrics,
    ExperimentSummary,
    ReliabilityBin,
    TelemetryReport,
    ThresholdOverride,
    VariantSummary,
)

logger = logging.getLogger(__name__)

TELEMETRY_PREFIX = "telemetry"
CALIBRATION_BINS = 10
DEFAULT_VARIANT = "A"


def hash_student_id(student_id: str) -> str:
    return hashlib.sha256(student_id.encode("utf-8")).hexdigest()[:16]


def week_bounds(at: datetime) -> Tuple[datetime, datetime]:
    """Sunday 00:00 UTC through the last millisecond of the following Saturday."""
    at = at.astimezone(timezone.utc) if at.tzinfo else at.replace(tzinfo=timezone.utc)
    days_since_sunday = (at.weekday() + 1) % 7
    start = datetime(at.year, at.month, at.day, tzinfo=timezone.utc) - timedelta(days=days_since_sunday)
    return start, start + timedelta(days=7) - timedelta(milliseconds=1)


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _created_order(entry: AlertTelemetryEntry):
    created = entry.created_at or datetime.min.replace(tzinfo=timezone.utc)
    return (created, entry.alert_id)


class AlertTelemetryService:
    """
    Records alert lifecycle events and derives evaluation metrics from them.

    Args:
        store: backend for telemetry entries
        learner: receives feedback samples (defaults to a learner over ``store``)
        experiments: source of experiment definitions for report summaries
    """

    def __init__(
        self,
        store: KeyValueStore,
        learner: Optional[ThresholdLearner] = None,
        experiments: Optional[ExperimentService] = None,
    ):
        self.repository: ModelRepository[AlertTelemetryEntry] = ModelRepository(
            store, AlertTelemetryEntry, TELEMETRY_PREFIX
        )
        self.learner = learner or ThresholdLearner(store)
        self.experiments = experiments or ExperimentService(store)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def log_alert_created(
        self,
        event: AlertEvent,
        predicted_relevance: Optional[float] = None,
    ) -> AlertTelemetryEntry:
        """
        Record an emitted alert. Re-emitting an already recorded id keeps the
        existing entry and its lifecycle.
        """
        existing = self.repository.get(event.id)
        if existing is not None:
            logger.debug(f"Telemetry for {event.id} already recorded")
            return existing

        metadata = event.metadata
        traces = {
            k: t for k, t in (metadata.get("threshold_trace") or {}).items() if isinstance(t, dict)
        }
        entry = AlertTelemetryEntry(
            alert_id=event.id,
            student_hash=hash_student_id(event.student_id),
            created_at=event.created_at,
            detector_types=list(metadata.get("detector_types") or traces),
            predicted_relevance=event.confidence if predicted_relevance is None else predicted_relevance,
            experiment_key=metadata.get("experiment_key"),
            experiment_variant=metadata.get("experiment_variant"),
            applied_thresholds={k: t["applied_threshold"] for k, t in traces.items() if "applied_threshold" in t},
            baseline_thresholds={k: t["baseline_threshold"] for k, t in traces.items() if "baseline_threshold" in t},
        )
        self.repository.put(event.id, entry)
        logger.info(f"alert_created {event.id} (experiment={entry.experiment_key}, variant={entry.experiment_variant})")
        return entry

    def log_alert_acknowledged(self, alert_id: str, at: Optional[datetime] = None) -> Optional[AlertTelemetryEntry]:
        return self._update(alert_id, "acknowledged", acknowledged_at=at or datetime.now(timezone.utc))

    def log_alert_resolved(
        self,
        alert_id: str,
        notes: Optional[str] = None,
        action_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[AlertTelemetryEntry]:
        changes = {"resolved_at": at or datetime.now(timezone.utc)}
        if notes:
            changes["resolution_notes"] = notes
        if action_id:
            changes["resolution_action_id"] = action_id
        return self._update(alert_id, "resolved", **changes)

    def log_alert_snoozed(
        self,
        alert_id: str,
        until: Optional[datetime] = None,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[AlertTelemetryEntry]:
        changes = {"snoozed_at": at or datetime.now(timezone.utc)}
        if until is not None:
            changes["snooze_until"] = until
        if reason:
            changes["snooze_reason"] = reason
        return self._update(alert_id, "snoozed", **changes)

    def log_feedback(
        self,
        alert_id: str,
        relevant: Optional[bool] = None,
        rating: Optional[float] = None,
        comment: Optional[str] = None,
    ) -> Optional[AlertTelemetryEntry]:
        """
        Attach teacher feedback, replacing any earlier feedback.

        Raises:
            DataValidationError: If the rating is outside 1-5
        """
        try:
            feedback = AlertFeedback(relevant=relevant, rating=rating, comment=comment)
        except ValidationError as e:
            raise DataValidationError(f"Invalid feedback for {alert_id}: {e.error_count()} error(s)") from e
        return self._update(alert_id, "feedback", feedback=feedback)

    def _update(self, alert_id: str, event_name: str, **changes) -> Optional[AlertTelemetryEntry]:
        entry = self.repository.get(alert_id)
        if entry is None:
            logger.warning(f"alert_{event_name} for unknown alert {alert_id} ignored")
            return None
        updated = entry.model_copy(update=changes)
        self.repository.put(alert_id, updated)
        logger.info(f"alert_{event_name} {alert_id}")
        return updated

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_entries(self) -> List[AlertTelemetryEntry]:
        return sorted(self.repository.all(), key=_created_order)

    def get_entries_between(self, start: datetime, end: datetime) -> List[AlertTelemetryEntry]:
        """Entries created in the inclusive [start, end] window."""
        return [e for e in self.get_entries() if e.created_at is not None and start <= e.created_at <= end]

    def get_calibration_data(
        self, entries: Optional[Sequence[AlertTelemetryEntry]] = None
    ) -> List[Tuple[float, int]]:
        """(predicted relevance, actual 0/1) pairs from entries with a relevance flag."""
        pairs = []
        for entry in self.get_entries() if entries is None else entries:
            if entry.predicted_relevance is None or entry.feedback is None or entry.feedback.relevant is None:
                continue
            pairs.append((entry.predicted_relevance, 1 if entry.feedback.relevant else 0))
        return pairs

    # ------------------------------------------------------------------ #
    # Metrics
    # ------------------------------------------------------------------ #

    def compute_calibration_metrics(
        self, entries: Optional[Sequence[AlertTelemetryEntry]] = None
    ) -> CalibrationMetrics:
        """
        Reliability curve over decile buckets and the Brier score.

        Predictions are clamped to [0, 0.999] so 1.0 lands in the top bucket.
        """
        counts = [0] * CALIBRATION_BINS
        predicted_sums = [0.0] * CALIBRATION_BINS
        actual_sums = [0.0] * CALIBRATION_BINS
        squared_error = 0.0

        pairs = self.get_calibration_data(entries)
        for predicted, actual in pairs:
            predicted = min(0.999, max(0.0, predicted))
            idx = min(CALIBRATION_BINS - 1, int(math.floor(predicted * CALIBRATION_BINS)))
            counts[idx] += 1
            predicted_sums[idx] += predicted
            actual_sums[idx] += actual
            squared_error += (predicted - actual) ** 2

        reliability = [
            ReliabilityBin(
                bucket=idx / CALIBRATION_BINS,
                predicted=predicted_sums[idx] / counts[idx] if counts[idx] else 0.0,
                actual=actual_sums[idx] / counts[idx] if counts[idx] else 0.0,
                count=counts[idx],
            )
            for idx in range(CALIBRATION_BINS)
        ]
        return CalibrationMetrics(
            reliability=reliability,
            sample_size=len(pairs),
            brier_score=squared_error / len(pairs) if pairs else None,
        )

    def trigger_threshold_learning(
        self,
        entries: Optional[Sequence[AlertTelemetryEntry]] = None,
        now: Optional[datetime] = None,
    ) -> List[ThresholdOverride]:
        """
        Feed labelled samples to the learner, one detector type at a time.

        The baseline threshold handed to the learner is the mean of the baseline
        thresholds recorded for that detector.
        """
        entries = self.get_entries() if entries is None else list(entries)
        overrides: List[ThresholdOverride] = []
        for detector_type, samples in sorted(samples_from_telemetry(entries).items()):
            recorded = [e.baseline_thresholds[detector_type] for e in entries if detector_type in e.baseline_thresholds]
            baseline = _mean(recorded)
            override = self.learner.update_from_feedback(detector_type, samples, baseline_threshold=baseline, now=now)
            if override is not None:
                overrides.append(override)
        return overrides

    def generate_weekly_report(
        self,
        week_containing: Optional[datetime] = None,
        learn: bool = True,
    ) -> TelemetryReport:
        """
        Summarize the week containing ``week_containing`` (default: now).

        With ``learn`` the week's labelled entries also update threshold overrides.
        """
        now = datetime.now(timezone.utc)
        start, end = week_bounds(week_containing or now)
        entries = self.get_entries_between(start, end)
        total = len(entries)

        first_action = []
        for entry in entries:
            actions = [t for t in (entry.acknowledged_at, entry.resolved_at) if t is not None]
            if actions:
                first_action.append((min(actions) - entry.created_at).total_seconds())

        feedbacks = [e.feedback for e in entries if e.feedback is not None]
        positives = sum(1 for f in feedbacks if f.relevant is True)
        negatives = sum(1 for f in feedbacks if f.relevant is False)
        student_days = {(e.student_hash, e.created_at.date()) for e in entries}

        report = TelemetryReport(
            week_start=start,
            week_end=end,
            total_created=total,
            total_acknowledged=sum(1 for e in entries if e.acknowledged_at is not None),
            total_resolved=sum(1 for e in entries if e.resolved_at is not None),
            time_to_first_action_seconds_avg=_mean(first_action),
            completion_rate=sum(1 for e in entries if e.resolved_at is not None) / total if total else None,
            ppv_estimate=positives / len(feedbacks) if feedbacks else None,
            false_positive_rate=negatives / len(feedbacks) if feedbacks else None,
            false_alerts_per_student_day=(total - positives) / len(student_days) if student_days else None,
            helpfulness_avg=_mean([f.rating for f in feedbacks if f.rating is not None]),
            experiments=self.experiment_summaries(entries),
        )
        if learn:
            report.overrides = self.trigger_threshold_learning(entries, now=week_containing or now)
        logger.info(
            f"Weekly alert report {start.date()}: {total} created, {report.total_resolved} resolved, "
            f"{len(report.overrides)} override(s) updated"
        )
        return report

    def experiment_summaries(self, entries: Sequence[AlertTelemetryEntry]) -> List[ExperimentSummary]:
        """
        Per-experiment variant precision; with exactly two variants a pooled
        two-proportion z-test names the winner and its significance (1 - p).
        """
        grouped: Dict[str, Dict[str, List[AlertTelemetryEntry]]] = defaultdict(lambda: defaultdict(list))
        for entry in entries:
            if entry.experiment_key:
                grouped[entry.experiment_key][entry.experiment_variant or DEFAULT_VARIANT].append(entry)

        summaries = []
        for key in sorted(grouped):
            variants = [self._variant_summary(name, grouped[key][name]) for name in sorted(grouped[key])]
            winner, significance = _two_proportion_test(variants)
            definition = self.experiments.get_experiment(key)
            summaries.append(
                ExperimentSummary(
                    key=key,
                    hypothesis=definition.hypothesis if definition else None,
                    started_at=definition.start_date if definition else None,
                    ended_at=definition.end_date if definition else None,
                    variants=variants,
                    winning_variant=winner,
                    significance=significance,
                )
            )
        return summaries

    @staticmethod
    def _variant_summary(variant: str, entries: Sequence[AlertTelemetryEntry]) -> VariantSummary:
        labelled = [e.feedback for e in entries if e.feedback is not None and e.feedback.relevant is not None]
        positives = sum(1 for f in labelled if f.relevant)
        return VariantSummary(
            variant=variant,
            ppv=positives / len(labelled) if labelled else None,
            samples=len(labelled),
            helpfulness_avg=_mean([f.rating for f in labelled if f.rating is not None]),
        )


def _two_proportion_test(variants: Sequence[VariantSummary]) -> Tuple[Optional[str], Optional[float]]:
    if len(variants) != 2:
        return None, None
    a, b = variants
    if not a.samples or not b.samples or a.ppv is None or b.ppv is None:
        return None, None
    pooled = (round(a.ppv * a.samples) + round(b.ppv * b.samples)) / (a.samples + b.samples)
    denom = math.sqrt(pooled * (1 - pooled) * (1 / a.samples + 1 / b.samples))
    if denom <= 0:
        return None, None
    z = (a.ppv - b.ppv) / denom
    p_value = 2 * (1 - normal_cdf(abs(z)))
    return (a.variant if a.ppv > b.ppv else b.variant), clamp01(1 - p_value)
