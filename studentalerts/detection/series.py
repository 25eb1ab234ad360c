"""
Series builders: turn normalized observations into detector inputs.

Builds, per student run:
- per-emotion intensity series (one TrendPoint list per category)
- per-behavior sensory aggregates (high-intensity successes over trials)
- the noise vs. peak-emotion association dataset from tracking sessions
- burst events (high-intensity emotions paired with nearby sensory intensity)

Design:
- Every series is sorted ascending by timestamp and truncated to the most recent points
- Non-finite values are skipped, never coerced to zero
- Grouping keys keep first-seen order so repeated runs iterate identically
"""

import logging
import math
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from studentalerts.anomaly.schema import BurstEvent, TrendPoint
from studentalerts.anomaly.statistics import clamp
from studentalerts.data.schema import EmotionObservation, SensoryObservation, TrackingSession

logger = logging.getLogger(__name__)

MIN_SERIES_LIMIT = 10
MAX_SERIES_LIMIT = 365


@dataclass
class SensoryAggregate:
    """High-intensity occurrence counts for one sensory behavior."""

    successes: int = 0
    trials: int = 0
    delta: float = 0.1
    series: List[TrendPoint] = field(default_factory=list)


@dataclass
class AssociationDataset:
    """
    2x2 table of environmental factor level against emotional response.

    Cells: a = high factor & high emotion, b = high factor only,
    c = high emotion only, d = neither.
    """

    label: str
    contingency: Dict[str, int]
    series_x: List[float]
    series_y: List[float]
    timestamps: List[datetime]
    context: Dict[str, str] = field(default_factory=dict)

    @property
    def support(self) -> int:
        return sum(self.contingency.values())


def clamp_series_limit(limit: int) -> int:
    return int(clamp(limit, MIN_SERIES_LIMIT, MAX_SERIES_LIMIT))


def truncate_series(series: List[TrendPoint], limit: int) -> List[TrendPoint]:
    """Keep the most recent ``limit`` points."""
    if limit <= 0 or len(series) <= limit:
        return series
    return series[len(series) - limit:]


def build_emotion_series(
    emotions: Sequence[EmotionObservation],
    series_limit: int = 90,
) -> Dict[str, List[TrendPoint]]:
    """
    Group emotion intensities by category.

    Returns:
        Dict mapping category -> ascending TrendPoint list (at most series_limit points)
    """
    grouped: Dict[str, List[TrendPoint]] = {}
    for entry in emotions:
        if not math.isfinite(entry.intensity):
            continue
        grouped.setdefault(entry.category, []).append(TrendPoint(entry.timestamp, float(entry.intensity)))

    for key, points in grouped.items():
        points.sort(key=lambda p: p.timestamp)
        grouped[key] = truncate_series(points, series_limit)
    return grouped


def build_sensory_aggregates(
    sensory: Sequence[SensoryObservation],
    series_limit: int = 90,
    high_intensity: float = 4.0,
) -> Dict[str, SensoryAggregate]:
    """
    Count high-intensity occurrences per behavior.

    Every record is a trial; a success is a record with intensity at or above
    ``high_intensity``. A missing intensity counts as a trial without success.
    delta is clamp(successes / trials - 0.1, 0.05, 0.2).
    """
    grouped: Dict[str, SensoryAggregate] = {}
    for entry in sensory:
        agg = grouped.setdefault(entry.behavior, SensoryAggregate())
        intensity = entry.intensity
        agg.trials += 1
        if intensity is not None and math.isfinite(intensity):
            if intensity >= high_intensity:
                agg.successes += 1
            agg.series.append(TrendPoint(entry.timestamp, float(intensity)))

    for agg in grouped.values():
        agg.series.sort(key=lambda p: p.timestamp)
        agg.series = truncate_series(agg.series, series_limit)
        if agg.trials > 0:
            agg.delta = clamp(agg.successes / agg.trials - 0.1, 0.05, 0.2)
    return grouped


def build_association_dataset(
    sessions: Sequence[TrackingSession],
    high_noise: float = 70.0,
    high_intensity: float = 4.0,
    min_support: int = 5,
) -> Optional[AssociationDataset]:
    """
    Build the noise-level vs. peak-emotion contingency table.

    Sessions without a finite noise reading are skipped. A session with no
    emotions counts as low emotion (peak 0).

    Returns:
        AssociationDataset, or None when fewer than ``min_support`` sessions qualify
    """
    counts = {"a": 0, "b": 0, "c": 0, "d": 0}
    noise_series: List[float] = []
    emotion_series: List[float] = []
    timestamps: List[datetime] = []

    for session in sorted(sessions, key=lambda s: s.timestamp):
        noise = session.environment.noise_level if session.environment else None
        if noise is None or not math.isfinite(noise):
            continue
        peak = session.peak_emotion_intensity() or 0.0

        high_emotion = peak >= high_intensity
        if noise >= high_noise:
            counts["a" if high_emotion else "b"] += 1
        else:
            counts["c" if high_emotion else "d"] += 1

        noise_series.append(float(noise))
        emotion_series.append(float(peak))
        timestamps.append(session.timestamp)

    if sum(counts.values()) < min_support:
        return None

    return AssociationDataset(
        label="Environment association",
        contingency=counts,
        series_x=noise_series,
        series_y=emotion_series,
        timestamps=timestamps,
        context={"factor": "noise_level"},
    )


def build_burst_events(
    emotions: Sequence[EmotionObservation],
    sensory: Sequence[SensoryObservation],
    high_intensity: float = 4.0,
    pairing_seconds: float = 60.0,
) -> List[BurstEvent]:
    """
    High-intensity emotion events, each paired with the mean intensity of
    sensory records within +/- ``pairing_seconds``.

    Events without nearby sensory intensity carry ``paired_value=None``.
    """
    paired_pool = sorted(
        (s.timestamp.timestamp(), float(s.intensity))
        for s in sensory
        if s.intensity is not None and math.isfinite(s.intensity)
    )
    pool_times = [t for t, _ in paired_pool]

    events: List[BurstEvent] = []
    for entry in emotions:
        if not math.isfinite(entry.intensity) or entry.intensity < high_intensity:
            continue
        ts = entry.timestamp.timestamp()
        lo = bisect_left(pool_times, ts - pairing_seconds)
        hi = bisect_right(pool_times, ts + pairing_seconds)
        nearby = [value for _, value in paired_pool[lo:hi]]
        paired_value = sum(nearby) / len(nearby) if nearby else None
        events.append(BurstEvent(entry.timestamp, float(entry.intensity), paired_value))

    events.sort(key=lambda e: e.timestamp)
    return events
