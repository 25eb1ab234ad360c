"""
Unit tests for alert governance: deduplication, lifecycle, quiet hours and caps.
"""

from datetime import datetime, timedelta, timezone

import pytest

from studentalerts.anomaly.schema import AlertEvent, AlertKind, AlertSeverity, AlertStatus
from studentalerts.core.exceptions import InvalidTransitionError
from studentalerts.detection.policies import AlertPolicies, within_quiet_hours
from studentalerts.detection.schema import AlertSettings, QuietHours

# 2026-03-06 is a Friday
FRIDAY = datetime(2026, 3, 6, tzinfo=timezone.utc)


def _event(alert_id, severity=AlertSeverity.MODERATE, created_at=FRIDAY, dedupe_key="k1", status=AlertStatus.NEW):
    return AlertEvent(
        id=alert_id,
        student_id="s-1",
        kind=AlertKind.BEHAVIOR_SPIKE,
        severity=severity,
        confidence=0.8,
        created_at=created_at,
        status=status,
        dedupe_key=dedupe_key,
    )


@pytest.fixture
def policies():
    return AlertPolicies()


class TestDeduplicate:
    """Test one-alert-per-key selection."""

    def test_keeps_most_severe(self, policies):
        alerts = [
            _event("a", AlertSeverity.MODERATE),
            _event("b", AlertSeverity.CRITICAL),
            _event("c", AlertSeverity.LOW),
        ]

        assert [a.id for a in policies.deduplicate(alerts)] == ["b"]

    def test_ties_break_on_recency_then_id(self, policies):
        alerts = [
            _event("a", created_at=FRIDAY),
            _event("b", created_at=FRIDAY + timedelta(hours=1)),
            _event("c", created_at=FRIDAY + timedelta(hours=1)),
        ]

        assert [a.id for a in policies.deduplicate(alerts)] == ["c"]

    def test_first_seen_key_order_and_flags(self, policies):
        alerts = [_event("x", dedupe_key="k2"), _event("a", dedupe_key="k1"), _event("b", dedupe_key="k1")]

        governed = policies.deduplicate_governed(alerts)

        assert [g.event.dedupe_key for g in governed] == ["k2", "k1"]
        assert [g.governance.has_duplicates for g in governed] == [False, True]

    def test_idempotent(self, policies):
        alerts = [_event(str(i), dedupe_key=f"k{i % 3}", created_at=FRIDAY + timedelta(minutes=i)) for i in range(9)]

        once = policies.deduplicate(alerts)

        assert policies.deduplicate(once) == once

    def test_missing_dedupe_key_is_derived(self, policies):
        first = _event("a", dedupe_key="")
        second = _event("b", dedupe_key="")

        assert len(policies.deduplicate([first, second])) == 1


class TestLifecycle:
    """Test status transitions."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (AlertStatus.NEW, AlertStatus.ACKNOWLEDGED),
            (AlertStatus.NEW, AlertStatus.IN_PROGRESS),
            (AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED),
            (AlertStatus.IN_PROGRESS, AlertStatus.DISMISSED),
            (AlertStatus.SNOOZED, AlertStatus.NEW),
        ],
    )
    def test_allowed(self, policies, current, target):
        assert policies.transition(_event("a", status=current), target).status == target

    @pytest.mark.parametrize(
        "current,target",
        [
            (AlertStatus.NEW, AlertStatus.RESOLVED),
            (AlertStatus.RESOLVED, AlertStatus.NEW),
            (AlertStatus.DISMISSED, AlertStatus.ACKNOWLEDGED),
            (AlertStatus.SNOOZED, AlertStatus.RESOLVED),
        ],
    )
    def test_forbidden(self, policies, current, target):
        with pytest.raises(InvalidTransitionError):
            policies.transition(_event("a", status=current), target)

    def test_snooze_requires_expiry_and_releases(self, policies):
        with pytest.raises(InvalidTransitionError):
            policies.transition(_event("a"), AlertStatus.SNOOZED)

        snoozed = policies.transition(_event("a"), AlertStatus.SNOOZED, snooze_until=FRIDAY + timedelta(hours=2))
        assert snoozed.snooze_until == FRIDAY + timedelta(hours=2)

        still = policies.release_expired_snoozes([snoozed], FRIDAY + timedelta(hours=1))
        assert still[0].status == AlertStatus.SNOOZED

        released = policies.release_expired_snoozes([snoozed], FRIDAY + timedelta(hours=3))
        assert released[0].status == AlertStatus.NEW
        assert released[0].snooze_until is None


class TestQuietHours:
    """Test quiet-hour evaluation (UTC)."""

    def test_window_crossing_midnight(self):
        quiet = QuietHours(start="22:00", end="06:00")

        assert within_quiet_hours(quiet, FRIDAY.replace(hour=23))
        assert within_quiet_hours(quiet, FRIDAY.replace(hour=3))
        assert not within_quiet_hours(quiet, FRIDAY.replace(hour=12))

    def test_day_filter_uses_window_start_day(self):
        quiet = QuietHours(start="22:00", end="06:00", days_of_week=[4])
        saturday = FRIDAY + timedelta(days=1)

        assert within_quiet_hours(quiet, FRIDAY.replace(hour=23))
        assert within_quiet_hours(quiet, saturday.replace(hour=2))
        assert not within_quiet_hours(quiet, saturday.replace(hour=23))

    def test_daytime_window(self):
        quiet = QuietHours(start="12:00", end="13:30")

        assert within_quiet_hours(quiet, FRIDAY.replace(hour=13, minute=30))
        assert not within_quiet_hours(quiet, FRIDAY.replace(hour=13, minute=31))

    def test_apply_quiet_hours_flags_without_dropping(self, policies):
        settings = AlertSettings(quiet_hours=QuietHours(start="22:00", end="06:00"))
        alerts = [_event("a", created_at=FRIDAY.replace(hour=23)), _event("b", created_at=FRIDAY.replace(hour=12))]

        governed = policies.apply_quiet_hours(alerts, settings)

        assert [g.governance.quiet_hours for g in governed] == [True, False]
        noon = policies.apply_quiet_hours(alerts, settings, now=FRIDAY.replace(hour=12))
        assert noon[0].governance.quiet_hours is False


class TestDailyCap:
    """Test per-severity daily caps."""

    def test_cap_flags_excess_alerts(self, policies):
        alerts = [
            _event(str(i), AlertSeverity.IMPORTANT, created_at=FRIDAY + timedelta(hours=i), dedupe_key=str(i))
            for i in range(3)
        ]

        governed = policies.apply_daily_cap(alerts, AlertSettings())

        assert [g.governance.cap_exceeded for g in governed] == [False, False, True]

    def test_critical_is_never_capped(self, policies):
        alerts = [_event(str(i), AlertSeverity.CRITICAL, dedupe_key=str(i)) for i in range(5)]

        governed = policies.apply_daily_cap(alerts, AlertSettings(daily_caps={AlertSeverity.CRITICAL: 1}))

        assert not any(g.governance.cap_exceeded for g in governed)

    def test_existing_counts_are_honoured(self, policies):
        alerts = [_event("a", AlertSeverity.MODERATE)]

        governed = policies.apply_daily_cap(alerts, None, existing_counts={AlertSeverity.MODERATE: 4})

        assert governed[0].governance.cap_exceeded
