"""Records read and written by the notification core.

Each dataclass mirrors one stored document shape. ``from_document`` parses
the camelCase document fields and raises ``MalformedRecordError`` when a
field the scanners depend on is missing; ``to_document`` produces the field
mapping written back to the store.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Mapping, Optional

from connector import Document
from notifications.errors import MalformedRecordError
from notifications.slot_portion import slot_portion_end_datetime

NOTIFICATIONS_COLLECTION = "notifications"
REMINDERS_COLLECTION = "appointment_reminders"
APPOINTMENTS_COLLECTION = "appointments"
DOCTORS_COLLECTION = "doctors"
AVAILABILITIES_SUBCOLLECTION = "availabilities"

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"
STATUS_REJECTED = "rejected"

TYPE_GENERAL = "general"
TYPE_APPOINTMENT = "appointment"
TYPE_STATUS_UPDATE = "statusUpdate"
TYPE_LAB_STATUS_UPDATE = "labStatusUpdate"

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def availability_collection(doctor_id: str) -> str:
    return f"{DOCTORS_COLLECTION}/{doctor_id}/{AVAILABILITIES_SUBCOLLECTION}"


def coerce_datetime(value: Any, tz: tzinfo = timezone.utc) -> datetime:
    """Normalise a stored timestamp to an aware ``datetime``.

    Accepts datetimes, dates, ISO-8601 strings, epoch milliseconds and the
    ``{"seconds": ..., "nanoseconds": ...}`` shape some clients serialise
    timestamps to. Naive values are taken to be in *tz*.
    """

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("timestamp string is empty")
        moment = datetime.fromisoformat(text)
    elif isinstance(value, bool):
        raise TypeError("boolean is not a timestamp")
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if seconds is None:
            raise ValueError("timestamp mapping has no seconds")
        return datetime.fromtimestamp(int(seconds) + int(nanos) / 1e9, tz=timezone.utc)
    else:
        raise TypeError(f"Unsupported timestamp type {type(value).__name__}")

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    return moment


def coerce_date(value: Any, tz: tzinfo = timezone.utc) -> date:
    """Return the calendar date of a stored value, as seen in *tz*."""

    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:
        return date.fromisoformat(value.strip())
    return coerce_datetime(value, tz).astimezone(tz).date()


def calculate_slot_count(start: datetime, end: datetime, slot_duration_minutes: Optional[int]) -> int:
    """Number of whole consultation slots that fit between *start* and *end*."""

    if not slot_duration_minutes or slot_duration_minutes <= 0 or end <= start:
        return 0
    total_minutes = (end - start).total_seconds() / 60
    return math.floor(total_minutes / slot_duration_minutes)


def _require(data: Mapping[str, Any], key: str, record_id: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise MalformedRecordError(record_id, f"missing '{key}'")
    return value


def _timestamp(value: Any, tz: tzinfo, record_id: str, label: str) -> datetime:
    try:
        return coerce_datetime(value, tz)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(record_id, f"invalid '{label}': {value!r}") from exc


def _slot_timestamp(value: Any, day: Any, tz: tzinfo, record_id: str, label: str) -> datetime:
    """Resolve a slot boundary stored either as a full timestamp or as a bare ``HH:MM`` on ``date``."""

    match = _CLOCK_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        return _timestamp(value, tz, record_id, label)
    if day is None or day == "":
        raise MalformedRecordError(record_id, f"'{label}' {value!r} has no 'date' to anchor it")
    hour, minute, second = (int(part) if part else 0 for part in match.groups())
    if hour > 23 or minute > 59 or second > 59:
        raise MalformedRecordError(record_id, f"invalid '{label}': {value!r}")
    try:
        slot_day = coerce_date(day, tz)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(record_id, f"invalid 'date': {day!r}") from exc
    return datetime.combine(slot_day, time(hour, minute, second), tzinfo=tz)


@dataclass
class Notification:
    """A message addressed to one user (or, when ``user_id`` is ``None``, to nobody in particular)."""

    title: str
    message: str
    user_id: Optional[str] = None
    type: str = TYPE_GENERAL
    read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = dict(self.extra)
        document.update(
            {
                "title": self.title,
                "message": self.message,
                "type": self.type,
                "read": self.read,
                "createdAt": self.created_at,
            }
        )
        if self.user_id:
            document["userId"] = self.user_id
        return document

    def to_payload(self) -> Dict[str, Any]:
        """JSON-serialisable form pushed to live channels and returned by the API."""

        payload = {key: _json_safe(value) for key, value in self.to_document().items()}
        if self.id:
            payload["id"] = self.id
        return payload

    @classmethod
    def from_document(cls, document: Document) -> "Notification":
        data = dict(document.data)
        known = {"userId", "title", "message", "type", "read", "createdAt"}
        created_raw = data.get("createdAt")
        try:
            created_at = coerce_datetime(created_raw) if created_raw is not None else None
        except (TypeError, ValueError):
            created_at = None
        return cls(
            id=document.id,
            user_id=data.get("userId"),
            title=str(data.get("title", "")),
            message=str(data.get("message", "")),
            type=str(data.get("type") or TYPE_GENERAL),
            read=bool(data.get("read", False)),
            created_at=created_at or datetime.fromtimestamp(0, tz=timezone.utc),
            extra={key: value for key, value in data.items() if key not in known},
        )


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


@dataclass
class ReminderEntry:
    """One scheduled reminder: when it fires, whether it has fired, and what it says."""

    time: datetime
    message: str
    sent: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    def is_due(self, now: datetime) -> bool:
        return not self.sent and now >= self.time

    def to_mapping(self) -> Dict[str, Any]:
        mapping = dict(self.raw)
        mapping.update({"time": self.time, "sent": self.sent, "message": self.message})
        return mapping

    @classmethod
    def from_mapping(cls, data: Any, tz: tzinfo, record_id: str) -> "ReminderEntry":
        if not isinstance(data, Mapping):
            raise MalformedRecordError(record_id, "reminder entry is not a mapping")
        trigger = _timestamp(_require(data, "time", record_id), tz, record_id, "time")
        return cls(
            time=trigger,
            message=str(data.get("message", "")),
            sent=bool(data.get("sent", False)),
            raw=dict(data),
        )


@dataclass
class ReminderSet:
    """All reminders scheduled for one appointment."""

    id: str
    appointment_id: Optional[str]
    doctor_id: str
    patient_id: str
    doctor_name: str
    patient_name: str
    appointment_time: Optional[datetime]
    consultation_type: str
    entries: List[ReminderEntry] = field(default_factory=list)

    def reminders_document(self) -> Dict[str, Any]:
        return {"reminders": [entry.to_mapping() for entry in self.entries]}

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "appointmentId": self.appointment_id,
            "doctorId": self.doctor_id,
            "patientId": self.patient_id,
            "doctorName": self.doctor_name,
            "patientName": self.patient_name,
            "appointmentTime": self.appointment_time,
            "type": self.consultation_type,
        }
        document.update(self.reminders_document())
        return document

    @classmethod
    def from_document(cls, document: Document, tz: tzinfo = timezone.utc) -> "ReminderSet":
        data = document.data
        entries_raw = data.get("reminders")
        if not isinstance(entries_raw, list):
            raise MalformedRecordError(document.id, "missing 'reminders' list")
        appointment_raw = data.get("appointmentTime")
        appointment_time = (
            _timestamp(appointment_raw, tz, document.id, "appointmentTime")
            if appointment_raw is not None
            else None
        )
        return cls(
            id=document.id,
            appointment_id=data.get("appointmentId"),
            doctor_id=str(_require(data, "doctorId", document.id)),
            patient_id=str(_require(data, "patientId", document.id)),
            doctor_name=str(data.get("doctorName") or ""),
            patient_name=str(data.get("patientName") or ""),
            appointment_time=appointment_time,
            consultation_type=str(data.get("type") or ""),
            entries=[ReminderEntry.from_mapping(item, tz, document.id) for item in entries_raw],
        )


@dataclass
class AvailabilitySlot:
    """A block of time a doctor has published as bookable."""

    id: str
    doctor_id: str
    end_time: datetime
    start_time: Optional[datetime] = None
    date: Optional[str] = None
    price: Optional[float] = None
    slot_duration: Optional[int] = None
    number_of_slots: int = 0
    mode: Optional[str] = None
    location: Optional[Any] = None

    @property
    def collection(self) -> str:
        return availability_collection(self.doctor_id)

    def expires_at(self, grace: timedelta) -> datetime:
        return self.end_time + grace

    @classmethod
    def from_document(
        cls, document: Document, doctor_id: str, tz: tzinfo = timezone.utc
    ) -> "AvailabilitySlot":
        data = document.data
        end_raw = _require(data, "endTime", document.id)
        end_time = _slot_timestamp(end_raw, data.get("date"), tz, document.id, "endTime")
        start_raw = data.get("startTime")
        start_time = (
            _slot_timestamp(start_raw, data.get("date"), tz, document.id, "startTime") if start_raw else None
        )

        duration_raw = data.get("slotDuration")
        try:
            slot_duration = int(duration_raw) if duration_raw not in (None, "") else None
        except (TypeError, ValueError):
            slot_duration = None
        stored_count = data.get("numberOfSlots", data.get("slots"))
        if isinstance(stored_count, int) and not isinstance(stored_count, bool):
            number_of_slots = stored_count
        elif start_time is not None:
            number_of_slots = calculate_slot_count(start_time, end_time, slot_duration)
        else:
            number_of_slots = 0

        price_raw = data.get("price")
        try:
            price = float(price_raw) if price_raw not in (None, "") else None
        except (TypeError, ValueError):
            price = None

        return cls(
            id=document.id,
            doctor_id=doctor_id,
            end_time=end_time,
            start_time=start_time,
            date=str(data["date"]) if data.get("date") is not None else None,
            price=price,
            slot_duration=slot_duration,
            number_of_slots=number_of_slots,
            mode=data.get("mode"),
            location=data.get("location"),
        )


@dataclass
class Appointment:
    """A booked consultation whose end time is carried in its slot description."""

    id: str
    doctor_id: Optional[str]
    patient_id: Optional[str]
    date: date
    slot_portion: str
    status: Optional[str]
    updated_at: Optional[datetime] = None

    def end_datetime(self, tz: tzinfo) -> datetime:
        return slot_portion_end_datetime(self.date, self.slot_portion, tz, record_id=self.id)

    @classmethod
    def from_document(cls, document: Document, tz: tzinfo = timezone.utc) -> "Appointment":
        data = document.data
        if not data.get("date") or not data.get("slotPortion"):
            raise MalformedRecordError(document.id, "missing 'date' or 'slotPortion'")
        try:
            appointment_date = coerce_date(data["date"], tz)
        except (TypeError, ValueError) as exc:
            raise MalformedRecordError(document.id, f"invalid 'date': {data['date']!r}") from exc
        updated_raw = data.get("updatedAt")
        return cls(
            id=document.id,
            doctor_id=data.get("doctorId"),
            patient_id=data.get("patientId"),
            date=appointment_date,
            slot_portion=str(data["slotPortion"]),
            status=data.get("status"),
            updated_at=_timestamp(updated_raw, tz, document.id, "updatedAt") if updated_raw else None,
        )
