"""
Record normalization: coerce raw observation dicts into canonical models.

Raw records arrive from the observation store in a loose, camelCase-heavy shape
(nested environmental data, epoch-millisecond timestamps, alternate field
names). This module flattens them into the models in ``studentalerts.data.schema``.

Design:
- Timestamps accepted as ISO strings, datetimes, epoch seconds or epoch millis
- Nested ``environmentalData.roomConditions`` / ``classroom.studentCount`` flattened
- A record that fails validation is skipped with a warning, never fatal
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from studentalerts.core.exceptions import DataValidationError
from studentalerts.data.schema import (
    EmotionObservation,
    Goal,
    Intervention,
    SensoryObservation,
    TrackingSession,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Epoch values above this are treated as milliseconds
_EPOCH_MILLIS_CUTOFF = 1e11


def normalize_timestamp(value: Any) -> datetime:
    """
    Normalize a timestamp to a UTC datetime.

    Supports:
    - datetime (naive values are treated as UTC)
    - ISO 8601 strings, with or without a trailing Z
    - Epoch seconds and epoch milliseconds (int, float or numeric string)

    Args:
        value: Raw timestamp value

    Returns:
        Timezone-aware UTC datetime

    Raises:
        DataValidationError: If the value cannot be interpreted
    """
    if value is None or value == "":
        raise DataValidationError("Empty timestamp")

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = _from_epoch(float(value))
    else:
        text = str(value).strip()
        try:
            dt = _from_epoch(float(text))
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as e:
                raise DataValidationError(f"Could not parse timestamp: {text}") from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(seconds_or_millis: float) -> datetime:
    if seconds_or_millis != seconds_or_millis:
        raise DataValidationError("NaN timestamp")
    seconds = seconds_or_millis / 1000.0 if abs(seconds_or_millis) > _EPOCH_MILLIS_CUTOFF else seconds_or_millis
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise DataValidationError(f"Epoch timestamp out of range: {seconds_or_millis}") from e


def _mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DataValidationError(f"Expected '{name}' to be an object, got {type(value).__name__}")
    return value


def _flatten_session(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(raw)
    if "environment" not in data:
        env_data = _mapping(data.get("environmentalData"), "environmentalData")
        room = dict(_mapping(env_data.get("roomConditions"), "roomConditions"))
        classroom = _mapping(env_data.get("classroom"), "classroom")
        if "studentCount" in classroom and "studentCount" not in room:
            room["studentCount"] = classroom["studentCount"]
        if room:
            data["environment"] = room
    return data


def _prepare(raw: Any, model: Type[BaseModel]) -> Dict[str, Any]:
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=False)
    if not isinstance(raw, dict):
        raise DataValidationError(f"Expected dict, got {type(raw).__name__}")

    data = dict(raw)
    if model is TrackingSession:
        data = _flatten_session(data)
    if "timestamp" in data:
        data["timestamp"] = normalize_timestamp(data["timestamp"])
    return data


def normalize_record(raw: Any, model: Type[ModelT]) -> ModelT:
    """
    Convert one raw record into ``model``.

    Raises:
        DataValidationError: If required fields are missing or invalid
    """
    if isinstance(raw, model):
        return raw
    data = _prepare(raw, model)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DataValidationError(f"Invalid {model.__name__}: {e.error_count()} error(s)") from e


def normalize_records(
    raw_records: Optional[Iterable[Any]], model: Type[ModelT]
) -> Tuple[List[ModelT], int]:
    """
    Normalize a batch of raw records.

    Args:
        raw_records: Raw dicts (or already-validated models); None is treated as empty
        model: Target schema model

    Returns:
        Tuple of (normalized_records, skipped_count)

    Notes:
        - Records that fail normalization are skipped (logged as warnings)
        - Order of the surviving records is preserved
    """
    normalized: List[ModelT] = []
    skipped = 0

    for raw in raw_records or []:
        try:
            normalized.append(normalize_record(raw, model))
        except DataValidationError as e:
            logger.warning(f"Skipped {model.__name__} record: {e}")
            skipped += 1

    return normalized, skipped


def normalize_emotions(raw_records: Optional[Iterable[Any]]) -> List[EmotionObservation]:
    return normalize_records(raw_records, EmotionObservation)[0]


def normalize_sensory(raw_records: Optional[Iterable[Any]]) -> List[SensoryObservation]:
    return normalize_records(raw_records, SensoryObservation)[0]


def normalize_sessions(raw_records: Optional[Iterable[Any]]) -> List[TrackingSession]:
    return normalize_records(raw_records, TrackingSession)[0]


def normalize_interventions(raw_records: Optional[Iterable[Any]]) -> List[Intervention]:
    return normalize_records(raw_records, Intervention)[0]


def normalize_goals(raw_records: Optional[Iterable[Any]]) -> List[Goal]:
    return normalize_records(raw_records, Goal)[0]
