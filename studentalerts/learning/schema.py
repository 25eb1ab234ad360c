"""
Records owned by the threshold learner and the experiment service.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ThresholdOverride(BaseModel):
    """
    Learned per-detector threshold adjustment.

    Fields:
    - adjustment_value: signed fraction applied to the baseline threshold
    - confidence_level: min(1, sample_size / 50); saturates at 50 feedback samples
    - baseline_threshold: threshold the adjustment was learned against
    """

    schema_version: int = 1
    detector_type: str
    adjustment_value: float = Field(ge=-0.99, le=0.99)
    confidence_level: float = Field(ge=0.0, le=1.0)
    last_updated_at: datetime
    baseline_threshold: Optional[float] = Field(default=None, gt=0.0)
    sample_size: int = 0
    ppv: Optional[float] = None
    false_positive_rate: Optional[float] = None


class FeedbackSample(BaseModel):
    """One piece of feedback on an emitted alert."""

    relevant: Optional[bool] = None
    predicted_relevance: Optional[float] = None
    threshold_applied: Optional[float] = None
    rating: Optional[float] = None
    created_at: Optional[datetime] = None


class AlertFeedback(BaseModel):
    relevant: Optional[bool] = None
    rating: Optional[float] = Field(default=None, ge=1.0, le=5.0)
    comment: Optional[str] = None


class AlertTelemetryEntry(BaseModel):
    """
    What the notification surface reports back about an emitted alert.

    Only a hash of the student id is kept.
    """

    alert_id: str
    student_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    detector_types: List[str] = Field(default_factory=list)
    predicted_relevance: Optional[float] = None
    experiment_key: Optional[str] = None
    experiment_variant: Optional[str] = None
    applied_thresholds: Dict[str, float] = Field(default_factory=dict)
    baseline_thresholds: Dict[str, float] = Field(default_factory=dict)
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolution_action_id: Optional[str] = None
    snoozed_at: Optional[datetime] = None
    snooze_until: Optional[datetime] = None
    snooze_reason: Optional[str] = None
    feedback: Optional[AlertFeedback] = None


class ReliabilityBin(BaseModel):
    bucket: float
    predicted: float = 0.0
    actual: float = 0.0
    count: int = 0


class CalibrationMetrics(BaseModel):
    """Reliability curve over ten probability buckets plus the Brier score."""

    reliability: List[ReliabilityBin]
    sample_size: int = 0
    brier_score: Optional[float] = None


class VariantSummary(BaseModel):
    variant: str
    ppv: Optional[float] = None
    samples: int = 0
    helpfulness_avg: Optional[float] = None


class ExperimentSummary(BaseModel):
    key: str
    hypothesis: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    variants: List[VariantSummary] = Field(default_factory=list)
    winning_variant: Optional[str] = None
    significance: Optional[float] = None


class TelemetryReport(BaseModel):
    """Weekly alert evaluation summary."""

    week_start: datetime
    week_end: datetime
    total_created: int = 0
    total_acknowledged: int = 0
    total_resolved: int = 0
    time_to_first_action_seconds_avg: Optional[float] = None
    completion_rate: Optional[float] = None
    ppv_estimate: Optional[float] = None
    false_positive_rate: Optional[float] = None
    false_alerts_per_student_day: Optional[float] = None
    helpfulness_avg: Optional[float] = None
    experiments: List[ExperimentSummary] = Field(default_factory=list)
    overrides: List[ThresholdOverride] = Field(default_factory=list)


class VariantConfig(BaseModel):
    """
    Threshold mapping for one experiment arm.

    The arm either substitutes ``fixed_threshold`` or maps the incoming value as
    ``value * multiplier + offset``.
    """

    label: Optional[str] = None
    multiplier: float = Field(1.0, gt=0.0)
    offset: float = 0.0
    fixed_threshold: Optional[float] = Field(default=None, gt=0.0)


class ExperimentDefinition(BaseModel):
    schema_version: int = 1
    key: str = Field(..., min_length=1)
    hypothesis: str = ""
    owner: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    variants: Dict[str, VariantConfig] = Field(default_factory=lambda: {"A": VariantConfig(), "B": VariantConfig()})
    traffic_split: Optional[Dict[str, float]] = None
    salt: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("variants")
    @classmethod
    def _has_variants(cls, value: Dict[str, VariantConfig]) -> Dict[str, VariantConfig]:
        if not value:
            raise ValueError("at least one variant is required")
        return value


class ExperimentAssignment(BaseModel):
    schema_version: int = 1
    experiment_key: str
    student_id: str
    variant: str
    assigned_at: datetime
