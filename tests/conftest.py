"""
Pytest configuration and shared fixtures.

Provides configuration instances, in-memory engines and synthetic student
observations for unit and integration tests.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd
import pytest

from studentalerts.core.config import AlertsConfig
from studentalerts.detection.engine import DetectionEngine
from studentalerts.storage.repositories import InMemoryKeyValueStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

SPIKE_VALUES = [2, 2, 2, 2, 2, 9, 9, 9]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def alerts_config() -> AlertsConfig:
    """
    Fixture providing pipeline configuration with defaults only.

    Built explicitly so tests do not depend on STUDENT_ALERTS_* environment
    variables or a local .env file.
    """
    return AlertsConfig()


@pytest.fixture
def memory_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def engine(alerts_config) -> DetectionEngine:
    return DetectionEngine(settings=alerts_config)


@pytest.fixture
def spike_emotions() -> List[Dict[str, Any]]:
    """
    Eight daily "anxious" ratings ending one hour before NOW: flat at 2, then
    three days at 9.
    """
    stamps = pd.date_range(end=NOW - timedelta(hours=1), periods=len(SPIKE_VALUES), freq="D")
    return [
        {"emotion": "anxious", "intensity": value, "timestamp": ts.isoformat()}
        for ts, value in zip(stamps, SPIKE_VALUES)
    ]


@pytest.fixture
def history_frame() -> pd.DataFrame:
    """
    Twenty days of calm history (one session per day) as a DataFrame.

    Columns: timestamp, anxious, noise, ears
    """
    stamps = pd.date_range(end=NOW - timedelta(days=1), periods=20, freq="D")
    return pd.DataFrame(
        {
            "timestamp": stamps,
            "anxious": [(2.0, 2.5, 3.0)[i % 3] for i in range(len(stamps))],
            "noise": [40.0 + (i % 5) * 5.0 for i in range(len(stamps))],
            "ears": [5.0 if i % 4 == 0 else 2.0 for i in range(len(stamps))],
        }
    )


@pytest.fixture
def history_records(history_frame) -> Dict[str, List[Dict[str, Any]]]:
    """
    The calm history as raw observation-store records (camelCase, nested
    environmental data), keyed like a JSON export.
    """
    emotions, sensory, sessions = [], [], []
    for row in history_frame.itertuples():
        ts = row.timestamp.isoformat()
        emotion = {"emotion": "anxious", "intensity": row.anxious, "timestamp": ts}
        sense = {"sensoryType": "auditory", "response": "covering ears", "intensity": row.ears, "timestamp": ts}
        emotions.append(emotion)
        sensory.append(sense)
        sessions.append(
            {
                "id": f"session-{row.Index}",
                "timestamp": ts,
                "emotions": [emotion],
                "sensoryInputs": [sense],
                "environmentalData": {
                    "roomConditions": {"noiseLevel": row.noise, "temperature": 21.0},
                    "classroom": {"studentCount": 18},
                },
            }
        )
    return {"emotions": emotions, "sensory": sensory, "sessions": sessions}


@pytest.fixture
def tau_u_records() -> Dict[str, List[Dict[str, Any]]]:
    """
    One active intervention started 10 days before NOW, with a goal whose
    measurements jump from ~1 before the start to ~5 after it.
    """
    start = NOW - timedelta(days=10)
    before = pd.date_range(end=start - timedelta(days=1), periods=6, freq="D")
    after = pd.date_range(start=start, periods=6, freq="D")
    points = [{"timestamp": ts.isoformat(), "value": (1.0, 1.5)[i % 2]} for i, ts in enumerate(before)]
    points += [{"timestamp": ts.isoformat(), "value": (5.0, 4.5)[i % 2]} for i, ts in enumerate(after)]
    return {
        "interventions": [
            {
                "id": "int-1",
                "title": "Visual schedule",
                "status": "active",
                "implementationDate": start.isoformat(),
                "relatedGoals": ["goal-1"],
            }
        ],
        "goals": [
            {"id": "goal-1", "title": "Transitions", "interventions": ["int-1"], "dataPoints": points}
        ],
    }


@pytest.fixture
def export_file(tmp_path, spike_emotions, tau_u_records) -> Path:
    """
    JSON export for student s-001 plus one unrelated record for s-002.
    """
    emotions = [dict(e, studentId="s-001") for e in spike_emotions]
    emotions.append({"studentId": "s-002", "emotion": "calm", "intensity": 1, "timestamp": NOW.isoformat()})
    payload = {"emotions": emotions, "sensory": [], "sessions": [], **tau_u_records}
    path = tmp_path / "export.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def reset_package_logging():
    """Drop handlers added by setup_logging so later tests start clean."""
    yield
    package_logger = logging.getLogger("studentalerts")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()


def pytest_configure(config):
    """
    Pytest hook for custom configuration.

    Registers custom markers used throughout tests.
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (deferred CI)"
    )
