"""
Schema definitions for the detection pipeline.

Pipeline-internal records (candidates, aggregated scores, threshold context) are
plain dataclasses; they are transient and never persisted. The run input and the
governance settings are pydantic models so they can be built from raw dicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator

from studentalerts.anomaly.schema import (
    AlertEvent,
    AlertKind,
    AlertSeverity,
    AlertSource,
    DetectorResult,
    StudentBaseline,
    ThresholdAdjustmentTrace,
    TrendPoint,
)
from studentalerts.core.exceptions import DataValidationError
from studentalerts.data.normalizers import normalize_records, normalize_timestamp
from studentalerts.data.schema import (
    EmotionObservation,
    Goal,
    Intervention,
    SensoryObservation,
    TrackingSession,
)
from studentalerts.learning.schema import ThresholdOverride

logger = logging.getLogger(__name__)


@dataclass
class ThresholdContext:
    """
    Per-candidate threshold state.

    Traces are filled in by threshold application, one per detector type.
    """

    experiment_key: str
    variant: str
    overrides: Dict[str, ThresholdOverride] = field(default_factory=dict)
    traces: Dict[str, ThresholdAdjustmentTrace] = field(default_factory=dict)


@dataclass
class AlertCandidate:
    """A potential alert: surviving detector results plus the series they ran on."""

    kind: AlertKind
    label: str
    detectors: List[DetectorResult]
    detector_types: List[str]
    series: List[TrendPoint]
    last_timestamp: datetime
    tier: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    threshold_traces: Dict[str, ThresholdAdjustmentTrace] = field(default_factory=dict)
    experiment_key: Optional[str] = None
    experiment_variant: Optional[str] = None


@dataclass
class AggregatedResult:
    impact: float
    confidence: float
    recency: float
    tier: float
    aggregate_score: float
    severity: AlertSeverity
    ranked_sources: List[AlertSource] = field(default_factory=list)

    @property
    def score_breakdown(self) -> Dict[str, float]:
        return {
            "impact": self.impact,
            "confidence": self.confidence,
            "recency": self.recency,
            "tier": self.tier,
        }


_LIST_MODELS = {
    "emotions": EmotionObservation,
    "sensory": SensoryObservation,
    "sessions": TrackingSession,
    "interventions": Intervention,
    "goals": Goal,
}


class DetectionInput(BaseModel):
    """
    One student's observations for a detection run.

    Malformed list items are dropped with a warning rather than rejecting the
    whole input. A malformed baseline snapshot is discarded the same way, so the
    stored baseline is used instead.
    """

    student_id: str = ""
    emotions: List[EmotionObservation] = Field(default_factory=list)
    sensory: List[SensoryObservation] = Field(default_factory=list)
    sessions: List[TrackingSession] = Field(default_factory=list)
    baseline: Optional[StudentBaseline] = None
    now: Optional[datetime] = None
    interventions: List[Intervention] = Field(default_factory=list)
    goals: List[Goal] = Field(default_factory=list)

    @field_validator("student_id", mode="before")
    @classmethod
    def _student_id(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("emotions", "sensory", "sessions", "interventions", "goals", mode="before")
    @classmethod
    def _drop_malformed(cls, value: Any, info: ValidationInfo) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            logger.warning(f"Ignoring non-list '{info.field_name}' input")
            return []
        records, skipped = normalize_records(value, _LIST_MODELS[info.field_name])
        if skipped:
            logger.warning(f"Dropped {skipped} malformed '{info.field_name}' record(s)")
        return records

    @field_validator("baseline", mode="before")
    @classmethod
    def _lenient_baseline(cls, value: Any) -> Optional[StudentBaseline]:
        if value is None or isinstance(value, StudentBaseline):
            return value
        try:
            return StudentBaseline.model_validate(value)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed baseline snapshot: {e.error_count()} error(s)")
            return None

    @field_validator("now", mode="before")
    @classmethod
    def _now(cls, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        try:
            return normalize_timestamp(value)
        except DataValidationError as e:
            raise ValueError(str(e)) from e


# --------------------------------------------------------------------------- #
# Governance
# --------------------------------------------------------------------------- #


class QuietHours(BaseModel):
    """
    Daily quiet window in UTC, "HH:MM" bounds inclusive. The window may cross
    midnight. days_of_week uses Monday=0; empty means every day.
    """

    start: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    days_of_week: List[int] = Field(default_factory=list)


def _default_caps() -> Dict[AlertSeverity, int]:
    return {AlertSeverity.IMPORTANT: 2, AlertSeverity.MODERATE: 4}


class AlertSettings(BaseModel):
    """Per-student governance settings. Severities missing from daily_caps are uncapped."""

    quiet_hours: Optional[QuietHours] = None
    daily_caps: Dict[AlertSeverity, int] = Field(default_factory=_default_caps)


class GovernanceStatus(BaseModel):
    quiet_hours: bool = False
    cap_exceeded: bool = False
    has_duplicates: bool = False


class GovernedAlert(BaseModel):
    """An alert with its internal governance annotations (never emitted as-is)."""

    event: AlertEvent
    governance: GovernanceStatus = Field(default_factory=GovernanceStatus)
