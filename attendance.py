"""Attendance events for scheduled pickups/dropoffs and their classification.

Classification (delay and label) is a pure function of the two timestamps.
Side effects such as alerting or notifying guardians live in ``alerts`` and
``notifications``; this module only records that a notification was sent.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from position_ingest import isoformat_z, parse_iso8601_utc


EARLY_THRESHOLD_MIN = -2
ON_TIME_LIMIT_MIN = 5
LATE_LIMIT_MIN = 15

META_SCHEMA_VERSION = 1


class DelayLabel(str, Enum):
    EARLY = "early"
    ON_TIME = "on_time"
    LATE = "late"
    VERY_LATE = "very_late"
    UNKNOWN = "unknown"


DELAY_LABEL_DISPLAY = {
    DelayLabel.EARLY: "Early",
    DelayLabel.ON_TIME: "On time",
    DelayLabel.LATE: "Late",
    DelayLabel.VERY_LATE: "Very late",
    DelayLabel.UNKNOWN: "Not yet recorded",
}


class Session(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"


class EventType(str, Enum):
    PICKUP = "pickup"
    DROPOFF = "dropoff"
    NO_SHOW = "no_show"
    EARLY_DISMISSAL = "early_dismissal"


class AttendanceStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


ABSENCE_REASONS = {EventType.NO_SHOW.value, EventType.EARLY_DISMISSAL.value}


class AttendanceLocked(ValueError):
    """Raised when a finished attendance event is mutated beyond its notes."""


@dataclass(frozen=True)
class Classification:
    delay_minutes: Optional[int]
    label: DelayLabel

    @property
    def display(self) -> str:
        return DELAY_LABEL_DISPLAY[self.label]


def delay_minutes(scheduled_time: Optional[datetime], actual_time: Optional[datetime]) -> Optional[int]:
    if scheduled_time is None or actual_time is None:
        return None
    minutes = (actual_time - scheduled_time).total_seconds() / 60.0
    # Round half up: 2.5 minutes counts as 3.
    return int(math.floor(minutes + 0.5))


def label_for_delay(delay: Optional[int]) -> DelayLabel:
    if delay is None:
        return DelayLabel.UNKNOWN
    if delay < EARLY_THRESHOLD_MIN:
        return DelayLabel.EARLY
    if delay <= ON_TIME_LIMIT_MIN:
        return DelayLabel.ON_TIME
    if delay <= LATE_LIMIT_MIN:
        return DelayLabel.LATE
    return DelayLabel.VERY_LATE


def classify(scheduled_time: Optional[datetime], actual_time: Optional[datetime]) -> Classification:
    """Delay in whole minutes (actual - scheduled) and its label."""
    delay = delay_minutes(scheduled_time, actual_time)
    return Classification(delay_minutes=delay, label=label_for_delay(delay))


@dataclass
class AttendanceMeta:
    """Versioned attendance metadata; anything unmodelled goes in ``extra``."""
    schema_version: int = META_SCHEMA_VERSION
    recorded_by: Optional[str] = None
    device_id: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "recorded_by": self.recorded_by,
            "device_id": self.device_id,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "AttendanceMeta":
        if not isinstance(raw, dict):
            return cls()
        known = {"schema_version", "recorded_by", "device_id", "extra"}
        extra = {str(k): str(v) for k, v in (raw.get("extra") or {}).items()}
        # Unknown top-level keys from older payloads are kept, stringified.
        extra.update({str(k): str(v) for k, v in raw.items() if k not in known and v is not None})
        return cls(
            schema_version=int(raw.get("schema_version") or META_SCHEMA_VERSION),
            recorded_by=raw.get("recorded_by"),
            device_id=raw.get("device_id"),
            extra=extra,
        )


@dataclass
class ParentNotification:
    type: str
    sent_at: datetime
    recipient: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "sent_at": isoformat_z(self.sent_at),
            "recipient": self.recipient,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ParentNotification":
        return cls(
            type=str(raw["type"]),
            sent_at=parse_iso8601_utc(str(raw["sent_at"])),
            recipient=str(raw.get("recipient") or ""),
            message=str(raw.get("message") or ""),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AttendanceEvent:
    student_id: str
    route_id: str
    date: date
    session: Session
    scheduled_time: Optional[datetime]
    assignment_id: Optional[str] = None
    event_type: EventType = EventType.PICKUP
    actual_time: Optional[datetime] = None
    present: bool = False
    status: AttendanceStatus = AttendanceStatus.SCHEDULED
    notes: str = ""
    location: Optional[str] = None
    coordinates: Optional[Tuple[float, float]] = None
    student_name: Optional[str] = None
    route_name: Optional[str] = None
    student_has_special_needs: bool = False
    parent_notifications: List[ParentNotification] = field(default_factory=list)
    meta: AttendanceMeta = field(default_factory=AttendanceMeta)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    # Derived --------------------------------------------------------
    @property
    def classification(self) -> Classification:
        return classify(self.scheduled_time, self.actual_time)

    @property
    def delay_minutes(self) -> Optional[int]:
        return self.classification.delay_minutes

    @property
    def is_finished(self) -> bool:
        return self.status in (AttendanceStatus.COMPLETED, AttendanceStatus.CANCELLED)

    @property
    def affects_safety_compliance(self) -> bool:
        """Special-needs student absent with no guardian notification on record."""
        return self.student_has_special_needs and not self.present and not self.parent_notifications

    @property
    def notification_type(self) -> Optional[str]:
        """Which guardian notification this outcome warrants, if any."""
        if self.status == AttendanceStatus.MISSED:
            return "absence"
        label = self.classification.label
        if label in (DelayLabel.LATE, DelayLabel.VERY_LATE):
            return "late"
        if label == DelayLabel.EARLY:
            return "early"
        return None

    # Mutations ------------------------------------------------------
    def mark_present(
        self,
        location: Optional[str] = None,
        coordinates: Optional[Tuple[float, float]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        if self.status == AttendanceStatus.CANCELLED:
            raise AttendanceLocked(f"attendance {self.event_id} is cancelled")
        if self.status == AttendanceStatus.COMPLETED:
            print(
                f"[attendance] WARNING: re-marking present on completed event {self.event_id}; "
                f"actual_time {self.actual_time} will be overwritten"
            )
        self.present = True
        self.actual_time = now or _utcnow()
        self.location = location
        self.coordinates = coordinates
        self.status = AttendanceStatus.COMPLETED

    def mark_absent(self, reason: str = EventType.NO_SHOW.value) -> None:
        if self.is_finished:
            raise AttendanceLocked(f"attendance {self.event_id} is {self.status.value}")
        if reason not in ABSENCE_REASONS:
            raise ValueError(f"unsupported absence reason {reason!r}")
        self.present = False
        self.event_type = EventType(reason)
        self.status = AttendanceStatus.MISSED
        self._append_note(reason)

    def cancel(self, note: Optional[str] = None) -> None:
        if self.is_finished:
            raise AttendanceLocked(f"attendance {self.event_id} is {self.status.value}")
        self.status = AttendanceStatus.CANCELLED
        if note:
            self._append_note(note)

    def add_note(self, note: str) -> None:
        """Notes stay writable in every status."""
        self._append_note(note)

    def _append_note(self, note: str) -> None:
        note = note.strip()
        if not note:
            return
        self.notes = f"{self.notes}; {note}" if self.notes else note

    def notification_message(self, notification_type: str) -> str:
        student = self.student_name or f"Student {self.student_id}"
        route = self.route_name or self.route_id
        day = f"{self.date:%b} {self.date.day}, {self.date.year}"
        session = self.session.value.capitalize()
        if notification_type == "absence":
            return f"{student} was not present at their {session} pickup for route {route} on {day}."
        if notification_type == "late":
            return (
                f"{student} was {self.delay_minutes} minutes late for their {session} pickup "
                f"on route {route} on {day}."
            )
        if notification_type == "early":
            return f"{student} was picked up early for their {session} pickup on route {route} on {day}."
        return f"Attendance update for {student} on route {route} on {day}."

    def record_parent_notification(
        self,
        notification_type: str,
        recipient: str,
        *,
        now: Optional[datetime] = None,
    ) -> ParentNotification:
        entry = ParentNotification(
            type=notification_type,
            sent_at=now or _utcnow(),
            recipient=recipient,
            message=self.notification_message(notification_type),
        )
        self.parent_notifications.append(entry)
        return entry

    def to_dict(self) -> Dict[str, Any]:
        classification = self.classification
        return {
            "event_id": self.event_id,
            "student_id": self.student_id,
            "route_id": self.route_id,
            "assignment_id": self.assignment_id,
            "student_name": self.student_name,
            "route_name": self.route_name,
            "student_has_special_needs": self.student_has_special_needs,
            "date": self.date.isoformat(),
            "session": self.session.value,
            "event_type": self.event_type.value,
            "scheduled_time": isoformat_z(self.scheduled_time) if self.scheduled_time else None,
            "actual_time": isoformat_z(self.actual_time) if self.actual_time else None,
            "present": self.present,
            "status": self.status.value,
            "notes": self.notes,
            "location": self.location,
            "coordinates": list(self.coordinates) if self.coordinates else None,
            "delay_minutes": classification.delay_minutes,
            "delay_label": classification.label.value,
            "delay_display": classification.display,
            "affects_safety_compliance": self.affects_safety_compliance,
            "parent_notifications": [n.to_dict() for n in self.parent_notifications],
            "meta": self.meta.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AttendanceEvent":
        """Rebuild a stored event. Derived fields in ``raw`` are ignored."""
        student_id = raw.get("student_id")
        route_id = raw.get("route_id")
        if not student_id or not route_id or not raw.get("date"):
            raise ValueError("attendance requires student_id, route_id and date")

        def _timestamp(key: str) -> Optional[datetime]:
            value = raw.get(key)
            return parse_iso8601_utc(str(value)) if value else None

        coordinates = raw.get("coordinates")
        return cls(
            student_id=str(student_id),
            route_id=str(route_id),
            date=date.fromisoformat(str(raw["date"])),
            session=Session(raw.get("session") or Session.MORNING.value),
            scheduled_time=_timestamp("scheduled_time"),
            assignment_id=raw.get("assignment_id"),
            event_type=EventType(raw.get("event_type") or EventType.PICKUP.value),
            actual_time=_timestamp("actual_time"),
            present=bool(raw.get("present")),
            status=AttendanceStatus(raw.get("status") or AttendanceStatus.SCHEDULED.value),
            notes=str(raw.get("notes") or ""),
            location=raw.get("location"),
            coordinates=(float(coordinates[0]), float(coordinates[1])) if coordinates else None,
            student_name=raw.get("student_name"),
            route_name=raw.get("route_name"),
            student_has_special_needs=bool(raw.get("student_has_special_needs")),
            parent_notifications=[ParentNotification.from_dict(n) for n in raw.get("parent_notifications") or []],
            meta=AttendanceMeta.from_dict(raw.get("meta")),
            event_id=str(raw.get("event_id") or raw.get("id") or uuid.uuid4().hex),
        )


def summarize_attendance(events: Iterable[AttendanceEvent]) -> Dict[str, Any]:
    records = list(events)
    total = len(records)
    present = sum(1 for e in records if e.present)
    late = sum(
        1 for e in records if e.classification.label in (DelayLabel.LATE, DelayLabel.VERY_LATE)
    )
    return {
        "total_scheduled": total,
        "total_present": present,
        "total_absent": total - present,
        "attendance_rate": round(present / total * 100, 2) if total else 0,
        "late_count": late,
        "no_show_count": sum(1 for e in records if e.event_type == EventType.NO_SHOW),
    }


def attendance_pattern(
    events: Iterable[AttendanceEvent],
    student_id: str,
    *,
    days: int = 30,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """One entry per day, newest first; days without a record carry ``None``."""
    today = today or _utcnow().date()
    by_date: Dict[date, AttendanceEvent] = {}
    for event in events:
        if event.student_id != student_id:
            continue
        by_date.setdefault(event.date, event)

    pattern: List[Dict[str, Any]] = []
    for offset in range(days):
        day = today - timedelta(days=offset)
        record = by_date.get(day)
        pattern.append(
            {
                "date": day.isoformat(),
                "present": record.present if record else None,
                "event_type": record.event_type.value if record else None,
                "delay_minutes": record.delay_minutes if record else None,
            }
        )
    return pattern


__all__ = [
    "AttendanceEvent",
    "AttendanceLocked",
    "AttendanceMeta",
    "AttendanceStatus",
    "Classification",
    "DelayLabel",
    "EventType",
    "ParentNotification",
    "Session",
    "attendance_pattern",
    "classify",
    "delay_minutes",
    "label_for_delay",
    "summarize_attendance",
]
