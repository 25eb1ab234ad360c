"""
Alert governance: deduplication, status lifecycle and delivery policies.

The pipeline only ever emits ``New`` alerts; every other status change belongs
to downstream consumers and goes through ``transition`` so that the lifecycle

    New -> Acknowledged | InProgress -> Resolved | Dismissed
    New -> Snoozed -> New (on expiry)

is enforced in one place. Quiet hours and daily caps annotate alerts with
governance flags; those flags are internal and never part of an emitted event.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Union

from studentalerts.anomaly.schema import SEVERITY_ORDER, AlertEvent, AlertSeverity, AlertStatus
from studentalerts.core.exceptions import InvalidTransitionError

from .finalizer import build_dedupe_key
from .schema import AlertSettings, GovernedAlert, QuietHours

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[AlertStatus, frozenset] = {
    AlertStatus.NEW: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.IN_PROGRESS, AlertStatus.SNOOZED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.IN_PROGRESS, AlertStatus.RESOLVED, AlertStatus.DISMISSED}),
    AlertStatus.IN_PROGRESS: frozenset({AlertStatus.RESOLVED, AlertStatus.DISMISSED}),
    AlertStatus.SNOOZED: frozenset({AlertStatus.NEW}),
    AlertStatus.RESOLVED: frozenset(),
    AlertStatus.DISMISSED: frozenset(),
}

AlertLike = Union[AlertEvent, GovernedAlert]


def _governed(alert: AlertLike) -> GovernedAlert:
    if isinstance(alert, GovernedAlert):
        return alert.model_copy(update={"governance": alert.governance.model_copy()})
    return GovernedAlert(event=alert)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def within_quiet_hours(quiet: QuietHours, at: datetime) -> bool:
    """Whether ``at`` (converted to UTC) falls inside the quiet window."""
    at = at.astimezone(timezone.utc) if at.tzinfo else at.replace(tzinfo=timezone.utc)
    start, end = _minutes(quiet.start), _minutes(quiet.end)
    now_min = at.hour * 60 + at.minute
    crosses_midnight = start > end
    if crosses_midnight:
        active = now_min >= start or now_min <= end
    else:
        active = start <= now_min <= end
    if not active or not quiet.days_of_week:
        return active

    day = at.weekday()
    if crosses_midnight and now_min <= end:
        # after midnight the window belongs to the previous day
        return (day - 1) % 7 in quiet.days_of_week
    return day in quiet.days_of_week


class AlertPolicies:
    """
    Stateless governance helpers over lists of alerts.
    """

    def calculate_dedupe_key(self, event: AlertEvent) -> str:
        if event.dedupe_key:
            return event.dedupe_key
        context = event.metadata.get("context_key") or event.metadata.get("label") or "na"
        return build_dedupe_key(event.student_id, event.kind, str(context))

    # ------------------------------------------------------------------ #
    # Deduplication
    # ------------------------------------------------------------------ #

    def deduplicate_governed(self, alerts: Sequence[AlertLike]) -> List[GovernedAlert]:
        """
        Keep one alert per dedupe key: most severe, then most recent, then highest id.

        Output keeps the order in which keys first appear.
        """
        winners: Dict[str, GovernedAlert] = {}
        counts: Dict[str, int] = {}
        for alert in alerts:
            current = _governed(alert)
            key = self.calculate_dedupe_key(current.event)
            counts[key] = counts.get(key, 0) + 1
            previous = winners.get(key)
            if previous is None or self._rank(current.event) > self._rank(previous.event):
                winners[key] = current

        result = []
        for key, winner in winners.items():
            winner.governance.has_duplicates = counts[key] > 1
            result.append(winner)
        return result

    def deduplicate(self, alerts: Sequence[AlertLike]) -> List[AlertEvent]:
        """Deduplicate and strip governance annotations."""
        return [g.event for g in self.deduplicate_governed(alerts)]

    @staticmethod
    def _rank(event: AlertEvent):
        return (SEVERITY_ORDER[event.severity], event.created_at, event.id)

    # ------------------------------------------------------------------ #
    # Status lifecycle
    # ------------------------------------------------------------------ #

    @staticmethod
    def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    def transition(
        self,
        event: AlertEvent,
        target: AlertStatus,
        snooze_until: Optional[datetime] = None,
    ) -> AlertEvent:
        """
        Return a copy of ``event`` in status ``target``.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the change, or
                a snooze has no expiry
        """
        if not self.can_transition(event.status, target):
            raise InvalidTransitionError(f"Cannot move alert {event.id} from {event.status.value} to {target.value}")
        if target == AlertStatus.SNOOZED and snooze_until is None:
            raise InvalidTransitionError(f"Snoozing alert {event.id} requires snooze_until")
        return event.model_copy(
            update={"status": target, "snooze_until": snooze_until if target == AlertStatus.SNOOZED else None}
        )

    def release_expired_snoozes(self, events: Sequence[AlertEvent], now: datetime) -> List[AlertEvent]:
        released = []
        for event in events:
            if event.status == AlertStatus.SNOOZED and event.snooze_until is not None and event.snooze_until <= now:
                event = self.transition(event, AlertStatus.NEW)
            released.append(event)
        return released

    # ------------------------------------------------------------------ #
    # Delivery policies
    # ------------------------------------------------------------------ #

    def apply_quiet_hours(
        self,
        alerts: Sequence[AlertLike],
        settings: Optional[AlertSettings],
        now: Optional[datetime] = None,
    ) -> List[GovernedAlert]:
        """
        Flag alerts falling in quiet hours, evaluated at ``now`` or else each
        alert's creation time.
        """
        result = []
        for alert in alerts:
            governed = _governed(alert)
            if settings is not None and settings.quiet_hours is not None:
                at = now or governed.event.created_at
                governed.governance.quiet_hours = within_quiet_hours(settings.quiet_hours, at)
            result.append(governed)
        return result

    def apply_daily_cap(
        self,
        alerts: Sequence[AlertLike],
        settings: Optional[AlertSettings],
        existing_counts: Optional[Dict[AlertSeverity, int]] = None,
    ) -> List[GovernedAlert]:
        """
        Flag alerts beyond the per-severity daily cap, oldest first.

        Critical alerts always pass. Input order is preserved.
        """
        governed = [_governed(a) for a in alerts]
        caps = (settings or AlertSettings()).daily_caps
        counts: Dict[AlertSeverity, int] = dict(existing_counts or {})

        for item in sorted(governed, key=lambda g: g.event.created_at):
            severity = item.event.severity
            cap = caps.get(severity)
            if severity == AlertSeverity.CRITICAL or cap is None:
                continue
            if counts.get(severity, 0) >= cap:
                item.governance.cap_exceeded = True
            else:
                counts[severity] = counts.get(severity, 0) + 1

        exceeded = sum(1 for g in governed if g.governance.cap_exceeded)
        if exceeded:
            logger.info(f"Daily cap suppressed {exceeded} alert(s)")
        return governed
