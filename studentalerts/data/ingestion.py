"""
Read-only access to the external observation store.

The alert pipeline never writes observations; it only needs to pull one
student's emotions, sensory records, tracking sessions, interventions and goals.
Sources return canonical models (see ``studentalerts.data.schema``); bad rows
are logged and skipped by the normalizers.

Design:
- ``BaseObservationSource`` is the seam the orchestrator depends on
- ``JSONObservationSource`` reads a JSON export (one object with a list per record type)
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Union

from studentalerts.core.exceptions import DataValidationError
from studentalerts.data.normalizers import (
    normalize_emotions,
    normalize_goals,
    normalize_interventions,
    normalize_sensory,
    normalize_sessions,
)
from studentalerts.data.schema import (
    EmotionObservation,
    Goal,
    Intervention,
    SensoryObservation,
    TrackingSession,
)

logger = logging.getLogger(__name__)


class BaseObservationSource(ABC):
    """
    Abstract read-only view over a student observation store.
    """

    @abstractmethod
    def emotions_for(self, student_id: str) -> List[EmotionObservation]:
        pass

    @abstractmethod
    def sensory_for(self, student_id: str) -> List[SensoryObservation]:
        pass

    @abstractmethod
    def sessions_for(self, student_id: str) -> List[TrackingSession]:
        pass

    @abstractmethod
    def interventions_for(self, student_id: str) -> List[Intervention]:
        pass

    @abstractmethod
    def goals_for(self, student_id: str) -> List[Goal]:
        pass


class JSONObservationSource(BaseObservationSource):
    """
    Observation source backed by a JSON export file.

    Expected layout::

        {
          "emotions": [...],
          "sensory": [...],
          "sessions": [...],
          "interventions": [...],
          "goals": [...]
        }

    Records carrying a ``studentId``/``student_id`` are filtered to the requested
    student; records without one are assumed to belong to every student in the
    file (single-student exports).
    """

    SECTIONS = ("emotions", "sensory", "sessions", "interventions", "goals")

    def __init__(self, filepath: Union[str, Path], encoding: str = "utf-8"):
        """
        Load the export eagerly.

        Args:
            filepath: Path to the JSON export
            encoding: File encoding (default utf-8)

        Raises:
            DataValidationError: If the file is missing or not a JSON object
        """
        self.filepath = Path(filepath)
        self.encoding = encoding

        if not self.filepath.exists():
            raise DataValidationError(f"Observation export not found: {self.filepath}")

        try:
            with open(self.filepath, "r", encoding=self.encoding) as f:
                payload = json.loads(f.read().lstrip("﻿"))
        except json.JSONDecodeError as e:
            raise DataValidationError(f"Invalid JSON export: {e}") from e

        if not isinstance(payload, dict):
            raise DataValidationError("Observation export must be a JSON object")

        self._sections: Dict[str, List[Any]] = {}
        for section in self.SECTIONS:
            records = payload.get(section) or []
            if not isinstance(records, list):
                logger.warning(f"Section '{section}' is not a list, ignoring")
                records = []
            self._sections[section] = records

    def _records(self, section: str, student_id: str) -> List[Any]:
        selected = []
        for record in self._sections.get(section, []):
            if isinstance(record, dict):
                owner = record.get("studentId", record.get("student_id"))
                if owner is not None and owner != student_id:
                    continue
            selected.append(record)
        return selected

    def emotions_for(self, student_id: str) -> List[EmotionObservation]:
        return normalize_emotions(self._records("emotions", student_id))

    def sensory_for(self, student_id: str) -> List[SensoryObservation]:
        return normalize_sensory(self._records("sensory", student_id))

    def sessions_for(self, student_id: str) -> List[TrackingSession]:
        return normalize_sessions(self._records("sessions", student_id))

    def interventions_for(self, student_id: str) -> List[Intervention]:
        return normalize_interventions(self._records("interventions", student_id))

    def goals_for(self, student_id: str) -> List[Goal]:
        return normalize_goals(self._records("goals", student_id))
