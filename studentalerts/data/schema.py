"""
Canonical input record schema for the alert pipeline.

These models describe the records read from the external observation store:
emotion and sensory observations, tracking sessions with their environmental
context, and the goals/interventions used for outcome analysis. Every source is
converted to this schema before series building or baseline estimation.

Design rationale:
- Only the fields the detectors need; unknown fields are ignored
- All timestamps normalized to timezone-aware UTC
- Intensities stay as floats, so non-finite values can be detected downstream
"""

import math
from datetime import datetime, timezone
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class _Record(BaseModel):
    """Shared model configuration for input records."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class EmotionObservation(_Record):
    """
    A single recorded emotion with its intensity.

    Attributes:
        emotion: Primary emotion category (e.g. "anxious")
        sub_emotion: Optional finer label, used as the key when emotion is blank
        intensity: Rating on the 1-5 scale
        timestamp: UTC time of the observation
    """

    id: Optional[str] = None
    student_id: Optional[str] = Field(default=None, alias="studentId")
    emotion: str = Field(default="", description="Emotion category")
    sub_emotion: Optional[str] = Field(default=None, alias="subEmotion")
    intensity: float = Field(..., description="Intensity rating")
    timestamp: UTCDateTime

    @property
    def category(self) -> str:
        return self.emotion or self.sub_emotion or "unknown"


class SensoryObservation(_Record):
    """
    A single sensory input/response observation.

    Attributes:
        sensory_type: Channel (visual, auditory, tactile, ...)
        response: Observed behavior (e.g. "covering ears"); preferred as the key
        intensity: Optional 1-5 rating
    """

    id: Optional[str] = None
    student_id: Optional[str] = Field(default=None, alias="studentId")
    sensory_type: Optional[str] = Field(default=None, alias="sensoryType")
    response: Optional[str] = None
    intensity: Optional[float] = None
    timestamp: UTCDateTime

    @property
    def behavior(self) -> str:
        return self.response or self.sensory_type or "sensory"


class EnvironmentalConditions(_Record):
    """Room conditions captured alongside a tracking session."""

    noise_level: Optional[float] = Field(default=None, alias="noiseLevel")
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    student_count: Optional[float] = Field(default=None, alias="studentCount")


ENVIRONMENTAL_FACTORS = ("noise_level", "temperature", "humidity", "student_count")


class TrackingSession(_Record):
    """
    A composite tracking session grouping observations made together.

    Notes:
        - Session timestamp anchors the environmental readings
        - emotions/sensory_inputs may also appear in the flat observation lists
    """

    id: Optional[str] = None
    student_id: Optional[str] = Field(default=None, alias="studentId")
    timestamp: UTCDateTime
    emotions: List[EmotionObservation] = Field(default_factory=list)
    sensory_inputs: List[SensoryObservation] = Field(default_factory=list, alias="sensoryInputs")
    environment: Optional[EnvironmentalConditions] = None

    def peak_emotion_intensity(self) -> Optional[float]:
        values = [e.intensity for e in self.emotions if math.isfinite(e.intensity)]
        return max(values) if values else None


class GoalDataPoint(_Record):
    timestamp: UTCDateTime
    value: float


class Goal(_Record):
    """A tracked goal with progress measurements."""

    id: str
    title: Optional[str] = None
    interventions: List[str] = Field(default_factory=list)
    data_points: List[GoalDataPoint] = Field(default_factory=list, alias="dataPoints")


class InterventionDataPoint(_Record):
    timestamp: UTCDateTime
    effectiveness: float


class Intervention(_Record):
    """
    A support strategy applied from implementation_date onwards.

    status is free text; only "active" and "completed" are analysed.
    """

    id: str
    title: Optional[str] = None
    status: Optional[str] = None
    implementation_date: Optional[UTCDateTime] = Field(default=None, alias="implementationDate")
    data_collection: List[InterventionDataPoint] = Field(default_factory=list, alias="dataCollection")
    related_goals: List[str] = Field(default_factory=list, alias="relatedGoals")
