"""Turns proximity, attendance and safety conditions into alert records.

Alert lifecycle::

    pending -> acknowledged -> resolved
    pending / acknowledged -> dismissed

Outbound notification is best effort. An alert exists as soon as it is
dispatched; a failed send only marks ``notification_status = "failed"`` and
queues the send for :meth:`AlertDispatcher.retry_failed_notifications`.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from attendance import AttendanceEvent, DelayLabel
from eta_estimator import ETAResult, ProximityLevel, classify_proximity
from notifications import NotificationMessage, Notifier
from position_ingest import isoformat_z, parse_iso8601_utc
from repository import Repository


ALERT_KIND = "alert"

# Speed above limit * this factor is a high-severity speeding alert
SPEEDING_HIGH_FACTOR = 1.2


class AlertStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


OPEN_STATUSES = (AlertStatus.PENDING, AlertStatus.ACKNOWLEDGED)

ALLOWED_TRANSITIONS = {
    AlertStatus.PENDING: {AlertStatus.ACKNOWLEDGED, AlertStatus.DISMISSED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED, AlertStatus.DISMISSED},
    AlertStatus.RESOLVED: set(),
    AlertStatus.DISMISSED: set(),
}


class InvalidAlertTransition(ValueError):
    pass


# ---------------------------
# Triggers
# ---------------------------

@dataclass
class ProximityTrigger:
    vehicle_id: str
    stop_id: str
    distance_km: float
    eta_minutes: float
    route_id: Optional[str] = None
    stop_name: Optional[str] = None
    vehicle_label: Optional[str] = None
    recipients: Sequence[str] = ()
    channel: str = "push"

    @property
    def level(self) -> Optional[ProximityLevel]:
        return classify_proximity(self.distance_km, self.eta_minutes)

    @classmethod
    def from_eta(cls, result: ETAResult, **kwargs: Any) -> "ProximityTrigger":
        return cls(
            vehicle_id=result.vehicle_id,
            stop_id=result.destination_key,
            distance_km=result.distance_km,
            eta_minutes=result.duration_minutes,
            **kwargs,
        )


@dataclass
class AttendanceTrigger:
    event: AttendanceEvent
    recipients: Sequence[str] = ()
    channel: str = "push"


@dataclass
class SafetyTrigger:
    """Emergency, compliance, speeding and other safety conditions.

    ``kind`` drives severity: ``emergency``/``critical`` are critical,
    ``compliance`` is high, ``speeding`` depends on how far over the limit.
    """
    kind: str
    title: str
    message: str
    vehicle_id: Optional[str] = None
    student_id: Optional[str] = None
    route_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    recipients: Sequence[str] = ()
    channel: str = "push"

    @classmethod
    def speeding(cls, vehicle_id: str, speed_kmh: float, limit_kmh: float, **kwargs: Any) -> "SafetyTrigger":
        return cls(
            kind="speeding",
            title="Speed limit exceeded",
            message=f"Vehicle speed ({speed_kmh:.0f} km/h) exceeds limit ({limit_kmh:.0f} km/h)",
            vehicle_id=vehicle_id,
            data={"speed_kmh": speed_kmh, "limit_kmh": limit_kmh},
            **kwargs,
        )

    @classmethod
    def compliance(cls, event: AttendanceEvent, **kwargs: Any) -> "SafetyTrigger":
        return cls(
            kind="compliance",
            title="Safety compliance: special-needs student absent",
            message=(
                f"Student {event.student_name or event.student_id} was absent on route "
                f"{event.route_name or event.route_id} with no guardian notification on record."
            ),
            student_id=event.student_id,
            route_id=event.route_id,
            data={"attendance_id": event.event_id},
            **kwargs,
        )


Trigger = Union[ProximityTrigger, AttendanceTrigger, SafetyTrigger]


def severity_for(trigger: Trigger) -> Severity:
    if isinstance(trigger, SafetyTrigger):
        if trigger.kind in ("emergency", "critical"):
            return Severity.CRITICAL
        if trigger.kind == "compliance":
            return Severity.HIGH
        if trigger.kind == "speeding":
            speed = float(trigger.data.get("speed_kmh") or 0.0)
            limit = float(trigger.data.get("limit_kmh") or 0.0)
            if limit > 0 and speed > limit * SPEEDING_HIGH_FACTOR:
                return Severity.HIGH
            return Severity.MEDIUM
        return Severity.LOW
    if isinstance(trigger, AttendanceTrigger):
        label = trigger.event.classification.label
        if label == DelayLabel.VERY_LATE or trigger.event.affects_safety_compliance:
            return Severity.HIGH
        if label == DelayLabel.LATE:
            return Severity.MEDIUM
        return Severity.LOW
    if isinstance(trigger, ProximityTrigger):
        return Severity.LOW
    raise TypeError(f"unsupported trigger {type(trigger).__name__}")


def arrival_message(trigger: ProximityTrigger, level: ProximityLevel) -> str:
    bus = trigger.vehicle_label or f"Bus {trigger.vehicle_id}"
    stop = trigger.stop_name or f"stop {trigger.stop_id}"
    eta = trigger.eta_minutes
    if level in (ProximityLevel.IMMEDIATE, ProximityLevel.VERY_CLOSE):
        return f"{bus} is arriving NOW at {stop}. Please be ready!"
    if eta <= 1:
        return f"{bus} will arrive at {stop} in less than 1 minute. Please be ready!"
    if eta <= 5:
        return f"{bus} will arrive at {stop} in {round(eta)} minutes. Please be ready!"
    return f"{bus} will arrive at {stop} in approximately {round(eta)} minutes."


# ---------------------------
# Records
# ---------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AlertRecord:
    alert_type: str
    severity: Severity
    title: str
    message: str
    raised_at: datetime
    vehicle_id: Optional[str] = None
    stop_id: Optional[str] = None
    student_id: Optional[str] = None
    route_id: Optional[str] = None
    level: Optional[ProximityLevel] = None
    status: AlertStatus = AlertStatus.PENDING
    last_seen_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    notification_status: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def transition(self, target: AlertStatus, now: datetime) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidAlertTransition(
                f"alert {self.alert_id} cannot go from {self.status.value} to {target.value}"
            )
        self.status = target
        if target == AlertStatus.ACKNOWLEDGED:
            self.acknowledged_at = now
        elif target == AlertStatus.RESOLVED:
            self.resolved_at = now
        elif target == AlertStatus.DISMISSED:
            self.dismissed_at = now

    def to_dict(self) -> Dict[str, Any]:
        def _ts(value: Optional[datetime]) -> Optional[str]:
            return isoformat_z(value) if value else None

        return {
            "id": self.alert_id,
            "alert_type": self.alert_type,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "vehicle_id": self.vehicle_id,
            "stop_id": self.stop_id,
            "student_id": self.student_id,
            "route_id": self.route_id,
            "level": self.level.value if self.level else None,
            "status": self.status.value,
            "raised_at": _ts(self.raised_at),
            "last_seen_at": _ts(self.last_seen_at),
            "acknowledged_at": _ts(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _ts(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
            "dismissed_at": _ts(self.dismissed_at),
            "notification_status": self.notification_status,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AlertRecord":
        def _ts(key: str) -> Optional[datetime]:
            value = raw.get(key)
            return parse_iso8601_utc(str(value)) if value else None

        raised_at = _ts("raised_at")
        if not raw.get("id") or not raw.get("alert_type") or raised_at is None:
            raise ValueError("alert requires id, alert_type and raised_at")
        level = raw.get("level")
        return cls(
            alert_type=str(raw["alert_type"]),
            severity=Severity(raw.get("severity") or Severity.MEDIUM.value),
            title=str(raw.get("title") or ""),
            message=str(raw.get("message") or ""),
            raised_at=raised_at,
            vehicle_id=raw.get("vehicle_id"),
            stop_id=raw.get("stop_id"),
            student_id=raw.get("student_id"),
            route_id=raw.get("route_id"),
            level=ProximityLevel(level) if level else None,
            status=AlertStatus(raw.get("status") or AlertStatus.PENDING.value),
            last_seen_at=_ts("last_seen_at"),
            acknowledged_at=_ts("acknowledged_at"),
            acknowledged_by=raw.get("acknowledged_by"),
            resolved_at=_ts("resolved_at"),
            resolved_by=raw.get("resolved_by"),
            resolution_notes=raw.get("resolution_notes"),
            dismissed_at=_ts("dismissed_at"),
            notification_status=raw.get("notification_status"),
            data=dict(raw.get("data") or {}),
            alert_id=str(raw["id"]),
        )


@dataclass
class _QueuedNotification:
    alert_id: str
    channel: str
    recipient_ref: str
    message: NotificationMessage
    attempts: int = 1
    attendance_event: Optional[AttendanceEvent] = None
    notification_type: Optional[str] = None


class AlertDispatcher:
    """
    Creates alert records from triggers, de-duplicates proximity alerts, and
    hands outbound messages to the notifier.

    Proximity de-duplication: while an alert for (vehicle, stop) is open, a
    trigger at the same level only refreshes ``last_seen_at``. A different
    level always raises a new record. A trigger with no level (vehicle left the
    alert zone) clears the key so a later approach alerts again.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        repository: Optional[Repository] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        max_notification_attempts: int = 3,
    ) -> None:
        self.notifier = notifier
        self.repository = repository
        self._clock = clock
        self.max_notification_attempts = max_notification_attempts
        self.alerts: Dict[str, AlertRecord] = {}
        self._open_proximity: Dict[Tuple[str, str], str] = {}
        self._retry_queue: List[_QueuedNotification] = []

    async def load(self) -> int:
        """Restore stored alerts; open proximity alerts keep de-duplicating."""
        if self.repository is None:
            return 0
        loaded = 0
        for raw in await self.repository.list(ALERT_KIND):
            try:
                record = AlertRecord.from_dict(raw)
            except (KeyError, ValueError, TypeError) as exc:
                print(f"[alerts] skipping malformed record {raw.get('id')}: {exc}")
                continue
            self.alerts[record.alert_id] = record
            if record.alert_type == "proximity" and record.is_open and record.vehicle_id and record.stop_id:
                self._open_proximity[(record.vehicle_id, record.stop_id)] = record.alert_id
            loaded += 1
        return loaded

    # Dispatch -------------------------------------------------------
    async def dispatch(self, trigger: Trigger) -> Optional[AlertRecord]:
        if isinstance(trigger, ProximityTrigger):
            return await self._dispatch_proximity(trigger)
        if isinstance(trigger, AttendanceTrigger):
            return await self._dispatch_attendance(trigger)
        if isinstance(trigger, SafetyTrigger):
            return await self._dispatch_safety(trigger)
        raise TypeError(f"unsupported trigger {type(trigger).__name__}")

    async def _dispatch_proximity(self, trigger: ProximityTrigger) -> Optional[AlertRecord]:
        key = (trigger.vehicle_id, trigger.stop_id)
        level = trigger.level
        now = self._clock()
        if level is None:
            self._open_proximity.pop(key, None)
            return None

        existing_id = self._open_proximity.get(key)
        existing = self.alerts.get(existing_id) if existing_id else None
        if existing is not None and existing.is_open and existing.level == level:
            existing.last_seen_at = now
            existing.data["distance_km"] = trigger.distance_km
            existing.data["eta_minutes"] = trigger.eta_minutes
            await self._store(existing)
            return existing

        message = arrival_message(trigger, level)
        record = AlertRecord(
            alert_type="proximity",
            severity=severity_for(trigger),
            title=f"{trigger.vehicle_label or 'Bus ' + trigger.vehicle_id} {level.value.replace('_', ' ')}",
            message=message,
            raised_at=now,
            last_seen_at=now,
            vehicle_id=trigger.vehicle_id,
            stop_id=trigger.stop_id,
            route_id=trigger.route_id,
            level=level,
            data={"distance_km": trigger.distance_km, "eta_minutes": trigger.eta_minutes},
        )
        self._open_proximity[key] = record.alert_id
        await self._store(record)
        print(
            f"[alerts] proximity {level.value} vehicle={trigger.vehicle_id} stop={trigger.stop_id} "
            f"dist={trigger.distance_km:.2f}km eta={trigger.eta_minutes:.1f}min"
        )
        notification = NotificationMessage(
            title="Bus arriving",
            body=message,
            tag=f"proximity-{trigger.vehicle_id}-{trigger.stop_id}",
            data={"alert_id": record.alert_id, "level": level.value},
        )
        await self._notify(record, trigger.channel, trigger.recipients, notification)
        return record

    async def _dispatch_attendance(self, trigger: AttendanceTrigger) -> AlertRecord:
        event = trigger.event
        classification = event.classification
        now = self._clock()
        notification_type = event.notification_type
        record = AlertRecord(
            alert_type="attendance",
            severity=severity_for(trigger),
            title=f"Attendance: {classification.display}" if event.present else "Attendance: absent",
            message=event.notification_message(notification_type or "update"),
            raised_at=now,
            student_id=event.student_id,
            route_id=event.route_id,
            data={
                "attendance_id": event.event_id,
                "delay_minutes": classification.delay_minutes,
                "delay_label": classification.label.value,
                "status": event.status.value,
            },
        )
        await self._store(record)
        print(
            f"[alerts] attendance {classification.label.value} student={event.student_id} "
            f"severity={record.severity.value}"
        )
        if notification_type:
            notification = NotificationMessage(
                title="Attendance update",
                body=record.message,
                tag=f"attendance-{event.event_id}",
                data={"alert_id": record.alert_id},
            )
            await self._notify(
                record,
                trigger.channel,
                trigger.recipients,
                notification,
                attendance_event=event,
                notification_type=notification_type,
            )
        return record

    async def _dispatch_safety(self, trigger: SafetyTrigger) -> AlertRecord:
        now = self._clock()
        record = AlertRecord(
            alert_type=trigger.kind,
            severity=severity_for(trigger),
            title=trigger.title,
            message=trigger.message,
            raised_at=now,
            vehicle_id=trigger.vehicle_id,
            student_id=trigger.student_id,
            route_id=trigger.route_id,
            data=dict(trigger.data),
        )
        await self._store(record)
        print(f"[alerts] {trigger.kind} severity={record.severity.value}: {trigger.title}")
        if record.severity in (Severity.HIGH, Severity.CRITICAL):
            notification = NotificationMessage(
                title=trigger.title,
                body=trigger.message,
                tag=f"{trigger.kind}-{record.alert_id}",
                data={"alert_id": record.alert_id, "severity": record.severity.value},
            )
            await self._notify(record, trigger.channel, trigger.recipients, notification)
        return record

    # Notifications --------------------------------------------------
    async def _notify(
        self,
        record: AlertRecord,
        channel: str,
        recipients: Sequence[str],
        message: NotificationMessage,
        *,
        attendance_event: Optional[AttendanceEvent] = None,
        notification_type: Optional[str] = None,
    ) -> None:
        if self.notifier is None or not recipients:
            record.notification_status = "skipped"
            return
        failed = 0
        for recipient in recipients:
            result = await self.notifier.send(channel, recipient, message)
            if result.ok:
                if attendance_event is not None and notification_type:
                    attendance_event.record_parent_notification(notification_type, recipient, now=self._clock())
                continue
            failed += 1
            print(
                f"[alerts] NotificationDeliveryFailed alert={record.alert_id} "
                f"channel={channel} recipient={recipient}: {result.error}"
            )
            self._retry_queue.append(
                _QueuedNotification(
                    alert_id=record.alert_id,
                    channel=channel,
                    recipient_ref=recipient,
                    message=message,
                    attendance_event=attendance_event,
                    notification_type=notification_type,
                )
            )
        record.notification_status = "failed" if failed else "sent"

    async def retry_failed_notifications(self) -> int:
        """Re-send queued failures; returns how many were delivered this pass."""
        if self.notifier is None or not self._retry_queue:
            return 0
        queue, self._retry_queue = self._retry_queue, []
        delivered = 0
        abandoned = set()
        for item in queue:
            result = await self.notifier.send(item.channel, item.recipient_ref, item.message)
            if result.ok:
                delivered += 1
                if item.attendance_event is not None and item.notification_type:
                    item.attendance_event.record_parent_notification(
                        item.notification_type, item.recipient_ref, now=self._clock()
                    )
                continue
            item.attempts += 1
            if item.attempts < self.max_notification_attempts:
                self._retry_queue.append(item)
            else:
                abandoned.add(item.alert_id)
                print(
                    f"[alerts] giving up on notification alert={item.alert_id} "
                    f"recipient={item.recipient_ref} after {item.attempts} attempts"
                )
        still_failing = {item.alert_id for item in self._retry_queue} | abandoned
        for alert_id in {item.alert_id for item in queue}:
            record = self.alerts.get(alert_id)
            if record is not None:
                record.notification_status = "failed" if alert_id in still_failing else "sent"
        return delivered

    @property
    def pending_notifications(self) -> int:
        return len(self._retry_queue)

    # Lifecycle ------------------------------------------------------
    async def acknowledge(self, alert_id: str, by: Optional[str] = None) -> AlertRecord:
        record = self._require(alert_id)
        record.transition(AlertStatus.ACKNOWLEDGED, self._clock())
        record.acknowledged_by = by
        await self._store(record)
        return record

    async def resolve(self, alert_id: str, notes: Optional[str] = None, by: Optional[str] = None) -> AlertRecord:
        record = self._require(alert_id)
        record.transition(AlertStatus.RESOLVED, self._clock())
        record.resolved_by = by
        record.resolution_notes = notes
        await self._store(record)
        return record

    async def dismiss(self, alert_id: str) -> AlertRecord:
        record = self._require(alert_id)
        record.transition(AlertStatus.DISMISSED, self._clock())
        await self._store(record)
        return record

    def clear_proximity(self, vehicle_id: str, stop_id: str) -> None:
        self._open_proximity.pop((vehicle_id, stop_id), None)

    def clear_vehicle(self, vehicle_id: str) -> None:
        """Forget open proximity keys for a vehicle whose trip ended."""
        for key in [k for k in self._open_proximity if k[0] == vehicle_id]:
            del self._open_proximity[key]

    # Queries --------------------------------------------------------
    def get(self, alert_id: str) -> Optional[AlertRecord]:
        return self.alerts.get(alert_id)

    def list_alerts(
        self,
        *,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        open_only: bool = False,
    ) -> List[AlertRecord]:
        items = []
        for record in self.alerts.values():
            if status and record.status.value != status:
                continue
            if severity and record.severity.value != severity:
                continue
            if alert_type and record.alert_type != alert_type:
                continue
            if vehicle_id and record.vehicle_id != vehicle_id:
                continue
            if open_only and not record.is_open:
                continue
            items.append(record)
        items.sort(key=lambda r: r.raised_at, reverse=True)
        return items

    def open_by_severity(self) -> Dict[str, List[AlertRecord]]:
        grouped: Dict[str, List[AlertRecord]] = {s.value: [] for s in (
            Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW
        )}
        for record in self.list_alerts(open_only=True):
            grouped[record.severity.value].append(record)
        return grouped

    def statistics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        records = [
            r for r in self.alerts.values()
            if (date_from is None or r.raised_at >= date_from) and (date_to is None or r.raised_at <= date_to)
        ]
        open_records = [r for r in records if r.is_open]
        resolved = [r for r in records if r.status == AlertStatus.RESOLVED and r.resolved_at]
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for record in records:
            by_type[record.alert_type] = by_type.get(record.alert_type, 0) + 1
            by_severity[record.severity.value] = by_severity.get(record.severity.value, 0) + 1
        if resolved:
            total_minutes = sum((r.resolved_at - r.raised_at).total_seconds() / 60.0 for r in resolved)
            average_resolution = round(total_minutes / len(resolved), 2)
        else:
            average_resolution = 0.0
        return {
            "total_alerts": len(records),
            "open_alerts": len(open_records),
            "resolved_alerts": len(resolved),
            "by_type": by_type,
            "by_severity": by_severity,
            "critical_open": sum(1 for r in open_records if r.severity == Severity.CRITICAL),
            "high_open": sum(1 for r in open_records if r.severity == Severity.HIGH),
            "average_resolution_minutes": average_resolution,
        }

    def _require(self, alert_id: str) -> AlertRecord:
        record = self.alerts.get(alert_id)
        if record is None:
            raise KeyError(alert_id)
        return record

    async def _store(self, record: AlertRecord) -> None:
        self.alerts[record.alert_id] = record
        if self.repository is not None:
            await self.repository.save(ALERT_KIND, record.to_dict())


__all__ = [
    "AlertDispatcher",
    "AlertRecord",
    "AlertStatus",
    "AttendanceTrigger",
    "InvalidAlertTransition",
    "ProximityTrigger",
    "SafetyTrigger",
    "Severity",
    "arrival_message",
    "severity_for",
]
