"""
Data module: observation records, normalization and read-only ingestion.

Raw observation store records are converted into canonical models before any
series building or baseline estimation:

    Raw records (JSON export / dicts)
        ↓
    Ingestion (studentalerts/data/ingestion.py)
        ↓
    Normalization (studentalerts/data/normalizers.py) → EmotionObservation, SensoryObservation, ...
        ↓
    Ready for baselines and detection
"""

from studentalerts.data.ingestion import BaseObservationSource, JSONObservationSource
from studentalerts.data.normalizers import (
    normalize_emotions,
    normalize_goals,
    normalize_interventions,
    normalize_record,
    normalize_records,
    normalize_sensory,
    normalize_sessions,
    normalize_timestamp,
)
from studentalerts.data.schema import (
    ENVIRONMENTAL_FACTORS,
    EmotionObservation,
    EnvironmentalConditions,
    Goal,
    GoalDataPoint,
    Intervention,
    InterventionDataPoint,
    SensoryObservation,
    TrackingSession,
)

__all__ = [
    # Schema
    "EmotionObservation",
    "SensoryObservation",
    "EnvironmentalConditions",
    "ENVIRONMENTAL_FACTORS",
    "TrackingSession",
    "Goal",
    "GoalDataPoint",
    "Intervention",
    "InterventionDataPoint",

    # Ingestion
    "BaseObservationSource",
    "JSONObservationSource",

    # Normalization
    "normalize_timestamp",
    "normalize_record",
    "normalize_records",
    "normalize_emotions",
    "normalize_sensory",
    "normalize_sessions",
    "normalize_interventions",
    "normalize_goals",
]
