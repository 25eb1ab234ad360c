"""
Unit tests for record normalization.

Tests conversion of raw observation-store records into canonical models.
"""

import pytest
from datetime import datetime, timezone

from studentalerts.core.exceptions import DataValidationError
from studentalerts.data.normalizers import (
    normalize_emotions,
    normalize_record,
    normalize_records,
    normalize_sessions,
    normalize_timestamp,
)
from studentalerts.data.schema import EmotionObservation, SensoryObservation, TrackingSession


class TestNormalizeTimestamp:
    """Test timestamp normalization."""

    def test_normalize_iso8601_with_z(self):
        result = normalize_timestamp("2026-02-07T10:30:45Z")

        assert result == datetime(2026, 2, 7, 10, 30, 45, tzinfo=timezone.utc)

    def test_normalize_naive_iso_is_utc(self):
        result = normalize_timestamp("2026-02-07T10:30:45")

        assert result.tzinfo == timezone.utc
        assert result.hour == 10

    def test_normalize_offset_converted_to_utc(self):
        result = normalize_timestamp("2026-02-07T12:30:45+02:00")

        assert result.hour == 10
        assert result.tzinfo == timezone.utc

    def test_epoch_seconds_and_millis_agree(self):
        seconds = normalize_timestamp(1707301845)
        millis = normalize_timestamp("1707301845000")

        assert seconds == millis
        assert seconds.year == 2024

    def test_naive_datetime(self):
        result = normalize_timestamp(datetime(2026, 1, 1, 8, 0))

        assert result == datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["", None, "not a date", "2026-13-45T99:00:00"])
    def test_invalid_timestamp_raises(self, value):
        with pytest.raises(DataValidationError):
            normalize_timestamp(value)


class TestNormalizeRecords:
    """Test batch normalization and skipping."""

    def test_bad_records_are_skipped_and_counted(self):
        raw = [
            {"emotion": "happy", "intensity": 3, "timestamp": "2026-02-07T10:00:00Z"},
            {"emotion": "sad", "timestamp": "2026-02-07T11:00:00Z"},
            {"emotion": "angry", "intensity": 4, "timestamp": "garbage"},
            "not a record",
            {"emotion": "calm", "intensity": 1, "timestamp": 1707301845},
        ]

        records, skipped = normalize_records(raw, EmotionObservation)

        assert [r.emotion for r in records] == ["happy", "calm"]
        assert skipped == 3

    def test_none_is_empty(self):
        assert normalize_records(None, EmotionObservation) == ([], 0)

    def test_camel_case_aliases(self):
        record = normalize_record(
            {"studentId": "s-1", "subEmotion": "worried", "intensity": 2, "timestamp": "2026-02-07T10:00:00Z"},
            EmotionObservation,
        )

        assert record.student_id == "s-1"
        assert record.category == "worried"

    def test_sensory_behavior_prefers_response(self):
        record = normalize_record(
            {"sensoryType": "auditory", "response": "covering ears", "timestamp": "2026-02-07T10:00:00Z"},
            SensoryObservation,
        )

        assert record.behavior == "covering ears"
        assert record.intensity is None

    def test_already_validated_models_pass_through(self):
        emotions = normalize_emotions([{"emotion": "happy", "intensity": 3, "timestamp": "2026-02-07T10:00:00Z"}])

        assert normalize_emotions(emotions) == emotions


def test_session_environment_is_flattened():
    sessions = normalize_sessions(
        [
            {
                "timestamp": "2026-02-07T10:00:00Z",
                "emotions": [{"emotion": "anxious", "intensity": 4, "timestamp": "2026-02-07T10:05:00Z"}],
                "environmentalData": {
                    "roomConditions": {"noiseLevel": 75, "humidity": 40},
                    "classroom": {"studentCount": 22},
                },
            }
        ]
    )

    assert len(sessions) == 1
    env = sessions[0].environment
    assert env.noise_level == 75
    assert env.humidity == 40
    assert env.student_count == 22
    assert sessions[0].peak_emotion_intensity() == 4


@pytest.mark.parametrize(
    "environmental_data",
    [
        "noisy",
        {"roomConditions": [70, 21]},
        {"roomConditions": {"noiseLevel": 70}, "classroom": "room 4"},
    ],
    ids=["env-string", "room-list", "classroom-string"],
)
def test_non_mapping_environment_is_rejected(environmental_data):
    raw = {"timestamp": "2026-02-07T10:00:00Z", "environmentalData": environmental_data}

    with pytest.raises(DataValidationError):
        normalize_record(raw, TrackingSession)

    assert normalize_sessions([raw]) == []
