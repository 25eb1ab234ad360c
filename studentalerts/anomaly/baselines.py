"""
Per-student rolling baselines.

The baseline service turns a student's recent observations into robust
reference statistics for the detectors:
- emotion categories: median, MAD-based IQR, CI of the median, Huber trend
- sensory behaviors: Beta-Binomial posterior under a Jeffreys prior
- environmental factors: median/IQR and correlation to peak emotional intensity

Baselines are computed per rolling window (7/14/30 days by default) and only
when enough data exists. The service is the sole writer of baseline records;
each refresh replaces the student's record as a whole.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from studentalerts.core.config import BaselineConfig, config
from studentalerts.data.normalizers import normalize_records, normalize_timestamp
from studentalerts.data.schema import (
    ENVIRONMENTAL_FACTORS,
    EmotionObservation,
    SensoryObservation,
    TrackingSession,
)
from studentalerts.storage.repositories import KeyValueStore, ModelRepository

from .schema import (
    BaselineQuality,
    BetaPosterior,
    BetaPrior,
    ConfidenceInterval,
    EmotionBaselineStats,
    EnvironmentalBaselineStats,
    SensoryBaselineStats,
    StudentBaseline,
    SufficiencyInfo,
    TrendEstimate,
)
from .statistics import IQR_NORMAL_SCALE, clamp01, huber_regression, mad, outlier_mask, pearson_correlation

logger = logging.getLogger(__name__)

JEFFREYS_PRIOR = 0.5
# Asymptotic efficiency factor: SE(median) ~= 1.2533 * sigma / sqrt(n)
MEDIAN_SE_FACTOR = 1.2533
Z_95 = 1.96
SECONDS_PER_DAY = 86_400.0
SLOPE_EPSILON = 1e-9


# --------------------------------------------------------------------------- #
# Pure helpers
# --------------------------------------------------------------------------- #


def beta_posterior(
    successes: int,
    trials: int,
    prior_alpha: float = JEFFREYS_PRIOR,
    prior_beta: float = JEFFREYS_PRIOR,
) -> BetaPosterior:
    """
    Analytic Beta-Binomial posterior with a normal-approximation 95% interval.

    With trials == 0 the posterior equals the prior (mean 0.5 under Jeffreys).
    """
    trials = max(0, int(trials))
    successes = min(max(0, int(successes)), trials)
    alpha = prior_alpha + successes
    beta = prior_beta + (trials - successes)
    total = alpha + beta
    mean = alpha / total
    variance = (alpha * beta) / (total * total * (total + 1.0))
    sd = math.sqrt(max(0.0, variance))
    return BetaPosterior(
        alpha=alpha,
        beta=beta,
        mean=mean,
        variance=variance,
        credible_interval=ConfidenceInterval(
            lower=max(0.0, mean - Z_95 * sd),
            upper=min(1.0, mean + Z_95 * sd),
        ),
    )


def median_confidence_interval(values: Sequence[float]) -> ConfidenceInterval:
    arr = np.asarray(values, dtype=float)
    center = float(np.median(arr))
    if arr.size < 2:
        return ConfidenceInterval(lower=center, upper=center)
    half_width = Z_95 * MEDIAN_SE_FACTOR * float(np.std(arr, ddof=1)) / math.sqrt(arr.size)
    return ConfidenceInterval(lower=center - half_width, upper=center + half_width)


def estimate_trend(timestamps: Sequence[datetime], values: Sequence[float]) -> Optional[TrendEstimate]:
    """Huber trend of values against days elapsed since the first timestamp."""
    if len(values) < 2 or len(timestamps) != len(values):
        return None
    origin = min(timestamps)
    days = [(ts - origin).total_seconds() / SECONDS_PER_DAY for ts in timestamps]
    slope, intercept = huber_regression(days, values)
    return TrendEstimate(slope_per_day=slope, intercept=intercept, points=len(values))


def shift_score(
    timestamps: Sequence[datetime],
    values: Sequence[float],
    scale: float = 0.2,
) -> float:
    """
    Normalized trend-shift magnitude in [0, 1].

    |Huber slope per day| relative to the series MAD sigma, divided by ``scale``.
    Fewer than three points count as no shift.
    """
    if len(values) < 3:
        return 0.0
    trend = estimate_trend(timestamps, values)
    if trend is None:
        return 0.0
    spread = mad(values)
    if spread <= 0:
        return 0.0 if abs(trend.slope_per_day) < SLOPE_EPSILON else 1.0
    return clamp01((abs(trend.slope_per_day) / spread) / scale)


def _day(ts: datetime) -> date:
    return ts.astimezone(timezone.utc).date()


# --------------------------------------------------------------------------- #
# Service
# --------------------------------------------------------------------------- #


class BaselineService:
    """
    Computes, persists and looks up per-student baselines.

    Args:
        store: Key-value backend for baseline records (injected, owned by this service)
        settings: Baseline configuration (defaults to global config)
    """

    def __init__(self, store: KeyValueStore, settings: Optional[BaselineConfig] = None):
        self.settings = settings or config.alerts.baseline
        self._repository: ModelRepository[StudentBaseline] = ModelRepository(store, StudentBaseline, "baseline")

    def get_baseline(self, student_id: str) -> Optional[StudentBaseline]:
        if not student_id:
            return None
        return self._repository.get(student_id)

    def check_sufficiency(
        self,
        emotions: Sequence[EmotionObservation],
        sensory: Sequence[SensoryObservation],
        sessions: Sequence[TrackingSession],
    ) -> SufficiencyInfo:
        days: Set[date] = set()
        for record in (*emotions, *sensory, *sessions):
            days.add(_day(record.timestamp))
        session_count = len(sessions) if sessions else len(days)
        sufficient = (
            session_count >= self.settings.min_sessions
            and len(days) >= self.settings.min_unique_days
        )
        return SufficiencyInfo(session_count=session_count, unique_days=len(days), sufficient=sufficient)

    def update_baseline(
        self,
        student_id: str,
        emotions: Iterable[Any],
        sensory: Iterable[Any],
        sessions: Iterable[Any],
        now: Optional[datetime] = None,
    ) -> Optional[StudentBaseline]:
        """
        Recompute and persist the student's baseline.

        Returns:
            The new baseline, or None when the data is insufficient (the stored
            record is left untouched in that case).
        """
        if not student_id:
            return None
        now = normalize_timestamp(now) if now is not None else datetime.now(timezone.utc)

        emotion_records, skipped_e = normalize_records(emotions, EmotionObservation)
        sensory_records, skipped_s = normalize_records(sensory, SensoryObservation)
        session_records, skipped_t = normalize_records(sessions, TrackingSession)
        if skipped_e or skipped_s or skipped_t:
            logger.info(
                f"Baseline {student_id}: skipped {skipped_e} emotion, {skipped_s} sensory, "
                f"{skipped_t} session records"
            )

        sufficiency = self.check_sufficiency(emotion_records, sensory_records, session_records)
        if not sufficiency.sufficient:
            logger.info(
                f"Baseline skipped for {student_id}: {sufficiency.session_count} sessions, "
                f"{sufficiency.unique_days} unique days"
            )
            return None

        insufficient_keys: List[str] = []
        emotion_stats: Dict[str, EmotionBaselineStats] = {}
        sensory_stats: Dict[str, SensoryBaselineStats] = {}
        environment_stats: Dict[str, EnvironmentalBaselineStats] = {}
        total_values = 0
        total_outliers = 0

        for window in self.settings.windows:
            cutoff = now - timedelta(days=window)

            emotions_in_window = [e for e in emotion_records if e.timestamp >= cutoff]
            for name, (stats, n_values) in self._emotion_stats(emotions_in_window).items():
                key = f"{name}:{window}"
                emotion_stats[key] = stats
                total_values += n_values
                total_outliers += stats.outliers_removed
                if stats.insufficient_data:
                    insufficient_keys.append(f"emotion:{key}")

            sessions_in_window = [s for s in session_records if s.timestamp >= cutoff]
            sensory_in_window = [s for s in sensory_records if s.timestamp >= cutoff]
            for name, stats in self._sensory_stats(sessions_in_window, sensory_in_window).items():
                key = f"{name}:{window}"
                sensory_stats[key] = stats
                if stats.insufficient_data:
                    insufficient_keys.append(f"sensory:{key}")

            for name, stats in self._environment_stats(sessions_in_window).items():
                key = f"{name}:{window}"
                environment_stats[key] = stats
                if stats.insufficient_data:
                    insufficient_keys.append(f"environment:{key}")

        outlier_rate = total_outliers / total_values if total_values else 0.0
        stability = self._stability(session_records, now)
        reliability = clamp01(self.settings.sufficiency_factor * (1.0 - 0.5 * outlier_rate) * (0.5 + 0.5 * stability))

        baseline = StudentBaseline(
            student_id=student_id,
            updated_at=now,
            next_suggested_update_at=now + timedelta(days=self.settings.refresh_interval_days),
            windows=list(self.settings.windows),
            emotions=emotion_stats,
            sensory=sensory_stats,
            environment=environment_stats,
            sufficiency=sufficiency,
            insufficient_keys=insufficient_keys,
            quality=BaselineQuality(
                reliability=reliability,
                outlier_rate=clamp01(outlier_rate),
                stability=clamp01(stability),
            ),
        )

        self._repository.put(student_id, baseline)
        logger.info(
            f"Baseline updated for {student_id}: {len(emotion_stats)} emotion, {len(sensory_stats)} sensory, "
            f"{len(environment_stats)} environment keys (reliability={reliability:.2f})"
        )
        return baseline

    # ------------------------------------------------------------------ #
    # Lookups used by the candidate generator
    # ------------------------------------------------------------------ #

    def lookup_emotion(self, baseline: Optional[StudentBaseline], category: str) -> Optional[EmotionBaselineStats]:
        if baseline is None:
            return None
        for window in self.settings.lookup_order:
            stats = baseline.emotions.get(f"{category}:{window}")
            if stats is not None and not stats.insufficient_data:
                return stats
        return None

    def lookup_sensory(self, baseline: Optional[StudentBaseline], behavior: str) -> Optional[SensoryBaselineStats]:
        if baseline is None:
            return None
        for window in self.settings.lookup_order:
            stats = baseline.sensory.get(f"{behavior}:{window}")
            if stats is not None and not stats.insufficient_data:
                return stats
        return None

    # ------------------------------------------------------------------ #
    # Per-kind statistics
    # ------------------------------------------------------------------ #

    def _robust_filter(self, values: Sequence[float]) -> np.ndarray:
        """Mask of usable points: finite and not a robust outlier."""
        arr = np.asarray(values, dtype=float)
        return np.isfinite(arr) & ~outlier_mask(arr, self.settings.outlier_z)

    def _emotion_stats(
        self, emotions: Sequence[EmotionObservation]
    ) -> Dict[str, Tuple[EmotionBaselineStats, int]]:
        grouped: Dict[str, List[EmotionObservation]] = defaultdict(list)
        for entry in emotions:
            grouped[entry.category].append(entry)

        result: Dict[str, Tuple[EmotionBaselineStats, int]] = {}
        for name, entries in grouped.items():
            entries.sort(key=lambda e: e.timestamp)
            values = np.asarray([e.intensity for e in entries], dtype=float)
            finite = np.isfinite(values)
            usable = self._robust_filter(values)
            outliers = int(np.sum(finite & ~usable))

            if not usable.any():
                result[name] = (
                    EmotionBaselineStats(sample_size=0, outliers_removed=outliers, insufficient_data=True),
                    int(np.sum(finite)),
                )
                continue

            clean = values[usable]
            clean_ts = [e.timestamp for e, keep in zip(entries, usable) if keep]
            result[name] = (
                EmotionBaselineStats(
                    median=float(np.median(clean)),
                    iqr=IQR_NORMAL_SCALE * mad(clean),
                    confidence_interval=median_confidence_interval(clean),
                    trend=estimate_trend(clean_ts, clean.tolist()) if clean.size >= 2 else None,
                    sample_size=int(clean.size),
                    outliers_removed=outliers,
                ),
                int(np.sum(finite)),
            )
        return result

    def _sensory_stats(
        self,
        sessions: Sequence[TrackingSession],
        sensory: Sequence[SensoryObservation],
    ) -> Dict[str, SensoryBaselineStats]:
        """
        Trials are sessions when sessions carry sensory inputs, else days with
        any sensory record. A success is a trial with a high-intensity
        occurrence of the behavior.
        """
        high = self.settings.high_intensity
        trials_by_behavior: Dict[str, int] = {}
        successes: Dict[str, int] = defaultdict(int)

        session_based = any(s.sensory_inputs for s in sessions)
        if session_based:
            buckets = [list(s.sensory_inputs) for s in sessions]
        else:
            by_day: Dict[date, List[SensoryObservation]] = defaultdict(list)
            for entry in sensory:
                by_day[_day(entry.timestamp)].append(entry)
            buckets = list(by_day.values())

        behaviors = sorted({entry.behavior for bucket in buckets for entry in bucket})
        for behavior in behaviors:
            trials_by_behavior[behavior] = len(buckets)
            for bucket in buckets:
                if any(
                    e.behavior == behavior and e.intensity is not None and e.intensity >= high
                    for e in bucket
                ):
                    successes[behavior] += 1

        result: Dict[str, SensoryBaselineStats] = {}
        for behavior in behaviors:
            trials = trials_by_behavior[behavior]
            posterior = beta_posterior(successes[behavior], trials)
            result[behavior] = SensoryBaselineStats(
                successes=successes[behavior],
                trials=trials,
                rate_prior=BetaPrior(alpha=posterior.alpha, beta=posterior.beta),
                posterior_mean=posterior.mean,
                posterior_variance=posterior.variance,
                credible_interval=posterior.credible_interval,
                insufficient_data=trials == 0,
            )
        return result

    def _environment_stats(self, sessions: Sequence[TrackingSession]) -> Dict[str, EnvironmentalBaselineStats]:
        factor_values: Dict[str, List[float]] = defaultdict(list)
        factor_peaks: Dict[str, List[float]] = defaultdict(list)
        for session in sessions:
            if session.environment is None:
                continue
            peak = session.peak_emotion_intensity()
            for factor in ENVIRONMENTAL_FACTORS:
                value = getattr(session.environment, factor)
                if value is None:
                    continue
                factor_values[factor].append(value)
                factor_peaks[factor].append(peak if peak is not None else math.nan)

        result: Dict[str, EnvironmentalBaselineStats] = {}
        for factor, raw in factor_values.items():
            values = np.asarray(raw, dtype=float)
            usable = self._robust_filter(values)
            outliers = int(np.sum(np.isfinite(values) & ~usable))
            if not usable.any():
                result[factor] = EnvironmentalBaselineStats(outliers_removed=outliers, insufficient_data=True)
                continue

            clean = values[usable]
            peaks = np.asarray(factor_peaks[factor], dtype=float)[usable]
            result[factor] = EnvironmentalBaselineStats(
                median=float(np.median(clean)),
                iqr=IQR_NORMAL_SCALE * mad(clean),
                sample_size=int(clean.size),
                outliers_removed=outliers,
                correlation_to_emotion=pearson_correlation(clean, peaks),
            )
        return result

    def _stability(self, sessions: Sequence[TrackingSession], now: datetime) -> float:
        """1 - shift score of the shortest-window noise series (first available factor otherwise)."""
        window = min(self.settings.windows)
        cutoff = now - timedelta(days=window)
        recent = sorted((s for s in sessions if s.timestamp >= cutoff and s.environment), key=lambda s: s.timestamp)

        for factor in ENVIRONMENTAL_FACTORS:
            points = [
                (s.timestamp, getattr(s.environment, factor))
                for s in recent
                if getattr(s.environment, factor) is not None and math.isfinite(getattr(s.environment, factor))
            ]
            if points:
                timestamps = [p[0] for p in points]
                values = [p[1] for p in points]
                return 1.0 - shift_score(timestamps, values, self.settings.stability_shift_scale)
        return 1.0
