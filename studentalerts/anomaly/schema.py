"""
Schema definitions for detectors, baselines and alert events.

All detector outputs are explainable: each result carries a detector-specific
diagnostic payload (a tagged union keyed by ``kind``) plus ranked sources.
The payload only collapses into an open key/value map at the outer
``AlertEvent.metadata`` boundary.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class AlertKind(str, Enum):
    """Alert categories understood by downstream consumers."""

    SAFETY = "safety"
    BEHAVIOR_SPIKE = "behavior_spike"
    CONTEXT_ASSOCIATION = "context_association"
    INTERVENTION_DUE = "intervention_due"
    DATA_QUALITY = "data_quality"
    IMPROVEMENT_NOTED = "improvement_noted"
    PATTERN_DETECTED = "pattern_detected"


class AlertSeverity(str, Enum):
    """Severity levels for alerts, most severe first."""

    CRITICAL = "critical"
    IMPORTANT = "important"
    MODERATE = "moderate"
    LOW = "low"


SEVERITY_ORDER = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MODERATE: 1,
    AlertSeverity.IMPORTANT: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"


class SourceType(str, Enum):
    PATTERN_ENGINE = "pattern_engine"
    TEACHER_ACTION = "teacher_action"
    SENSOR = "sensor"
    MANUAL = "manual"
    BASELINE = "baseline"
    POLICY = "policy"


@dataclass(frozen=True)
class TrendPoint:
    """One observation in a per-student series (UTC timestamp, numeric value)."""

    timestamp: datetime
    value: float


@dataclass(frozen=True)
class BurstEvent:
    """A high-intensity event with the mean intensity of nearby secondary records."""

    timestamp: datetime
    value: float
    paired_value: Optional[float] = None


class AlertSource(BaseModel):
    """
    Evidence attached to a detector result or an alert.

    Fields:
    - type: origin of the evidence
    - label: short human-readable description
    - details: detector-specific numbers (rank is added by the aggregator)
    """

    type: SourceType = SourceType.PATTERN_ENGINE
    label: str
    details: Dict[str, Any] = Field(default_factory=dict)


# --------------------------------------------------------------------------- #
# Detector diagnostics (tagged union)
# --------------------------------------------------------------------------- #


class _AnalysisBase(BaseModel):
    """Fields stamped onto every diagnostic payload by threshold application."""

    detector_type: Optional[str] = None
    experiment_key: Optional[str] = None
    variant: Optional[str] = None


class EWMAAnalysis(_AnalysisBase):
    kind: Literal["ewma"] = "ewma"
    lam: float
    z_multiplier: float
    reference_median: float
    reference_sigma: float
    ewma_last: float
    upper_limit: float
    lower_limit: float
    z_score: float
    sustained_count: int
    sustained_required: int
    direction: str
    used_baseline: bool


class CUSUMAnalysis(_AnalysisBase):
    kind: Literal["cusum"] = "cusum"
    mean: float
    sigma: float
    k: float
    h: float
    max_cusum: float
    ratio: float
    direction: str
    change_index: int


class BetaRateAnalysis(_AnalysisBase):
    kind: Literal["beta"] = "beta"
    successes: int
    trials: int
    prior_alpha: float
    prior_beta: float
    posterior_alpha: float
    posterior_beta: float
    posterior_mean: float
    baseline_rate: float
    delta: float
    threshold_rate: float
    probability_above: float


class AssociationAnalysis(_AnalysisBase):
    kind: Literal["association"] = "association"
    contingency: Dict[str, int]
    support: int
    log_odds_ratio: float
    ci_lower: float
    ci_upper: float
    fisher_p: float
    correlation: float
    correlation_p: Optional[float] = None


class BurstAnalysis(_AnalysisBase):
    kind: Literal["burst"] = "burst"
    window_minutes: float
    event_count: int
    duration_minutes: float
    mean_intensity: float
    peak_intensity: float
    cross_correlation: float
    density_ratio: float


class PhaseSummary(BaseModel):
    count: int
    mean: float
    median: float
    values: List[float]


class TauUAnalysis(_AnalysisBase):
    kind: Literal["tau_u"] = "tau_u"
    effect_size: float
    p_value: float
    outcome: Literal["improving", "worsening", "no_change"]
    comparisons: int
    trend_adjustment: float
    ties: int
    improvement_probability: float
    phase_a: PhaseSummary
    phase_b: PhaseSummary
    phase_a_timestamps: List[datetime] = Field(default_factory=list)
    phase_b_timestamps: List[datetime] = Field(default_factory=list)
    intervention_id: Optional[str] = None
    goal_id: Optional[str] = None


DetectorAnalysis = Annotated[
    Union[EWMAAnalysis, CUSUMAnalysis, BetaRateAnalysis, AssociationAnalysis, BurstAnalysis, TauUAnalysis],
    Field(discriminator="kind"),
]


class DetectorResult(BaseModel):
    """
    Output of a single detector run.

    score and confidence are intentionally unconstrained here: an out-of-range
    value marks the result invalid (see ``is_valid_detector_result``) rather than
    raising at construction.
    """

    score: float
    confidence: float
    threshold_applied: Optional[float] = None
    impact_hint: Optional[str] = None
    analysis: Optional[DetectorAnalysis] = None
    sources: List[AlertSource] = Field(default_factory=list)


def is_valid_detector_result(result: Optional[DetectorResult]) -> bool:
    if result is None:
        return False
    for value in (result.score, result.confidence):
        if value is None or not math.isfinite(value) or value < 0.0 or value > 1.0:
            return False
    return True


class ThresholdAdjustmentTrace(BaseModel):
    """How far the applied threshold moved from the baseline threshold."""

    adjustment: float
    applied_threshold: float
    baseline_threshold: float


# --------------------------------------------------------------------------- #
# Baselines
# --------------------------------------------------------------------------- #


class ConfidenceInterval(BaseModel):
    lower: float
    upper: float
    level: float = 0.95


class TrendEstimate(BaseModel):
    """Robust (Huber) linear trend, slope in units per day."""

    slope_per_day: float
    intercept: float
    points: int


class BetaPrior(BaseModel):
    alpha: float = Field(gt=0.0)
    beta: float = Field(gt=0.0)

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)


class BetaPosterior(BaseModel):
    alpha: float
    beta: float
    mean: float
    variance: float
    credible_interval: ConfidenceInterval


class EmotionBaselineStats(BaseModel):
    median: Optional[float] = None
    iqr: Optional[float] = None
    confidence_interval: Optional[ConfidenceInterval] = None
    trend: Optional[TrendEstimate] = None
    sample_size: int = 0
    outliers_removed: int = 0
    insufficient_data: bool = False


class SensoryBaselineStats(BaseModel):
    successes: int
    trials: int
    rate_prior: BetaPrior
    posterior_mean: float
    posterior_variance: float
    credible_interval: ConfidenceInterval
    insufficient_data: bool = False


class EnvironmentalBaselineStats(BaseModel):
    median: Optional[float] = None
    iqr: Optional[float] = None
    sample_size: int = 0
    outliers_removed: int = 0
    correlation_to_emotion: Optional[float] = None
    insufficient_data: bool = False


class SufficiencyInfo(BaseModel):
    session_count: int
    unique_days: int
    sufficient: bool


class BaselineQuality(BaseModel):
    reliability: float = Field(ge=0.0, le=1.0)
    outlier_rate: float = Field(ge=0.0, le=1.0)
    stability: float = Field(ge=0.0, le=1.0)


class StudentBaseline(BaseModel):
    """
    Robust per-student reference statistics.

    Keys of the per-kind maps are "<name>:<window days>", e.g. "anxious:14".
    The record is replaced as a whole on every refresh.
    """

    schema_version: int = 1
    student_id: str
    updated_at: datetime
    next_suggested_update_at: datetime
    windows: List[int]
    emotions: Dict[str, EmotionBaselineStats] = Field(default_factory=dict)
    sensory: Dict[str, SensoryBaselineStats] = Field(default_factory=dict)
    environment: Dict[str, EnvironmentalBaselineStats] = Field(default_factory=dict)
    sufficiency: SufficiencyInfo
    insufficient_keys: List[str] = Field(default_factory=list)
    quality: Optional[BaselineQuality] = None


# --------------------------------------------------------------------------- #
# Alert events
# --------------------------------------------------------------------------- #


class AlertEvent(BaseModel):
    """
    Finalized alert emitted to downstream consumers.

    Fields:
    - id: deterministic from (student_id, kind, label, last timestamp)
    - dedupe_key: stable over (student_id, kind, label)
    - sources: ranked evidence, best first
    - metadata: open map (label, summary, sparkline, score breakdown, ...)
    """

    id: str
    student_id: str
    kind: AlertKind
    severity: AlertSeverity
    confidence: float = Field(ge=0.0, le=1.0)
    created_at: datetime
    status: AlertStatus = AlertStatus.NEW
    dedupe_key: str
    sources: List[AlertSource] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    snooze_until: Optional[datetime] = None
