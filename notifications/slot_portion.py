"""Parser for the legacy free-text appointment slot description.

Appointments store their time range as display text such as
``"6:12 PM - 6:42 PM portion"``. Only the end time is needed to decide
when an appointment has lapsed, so this module extracts it and nothing else.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, tzinfo

from notifications.errors import MalformedRecordError

RANGE_SEPARATOR = " - "
_PORTION_RE = re.compile(r"portion", re.IGNORECASE)


def parse_slot_portion_end(slot_portion: str, *, record_id: str = "<unknown>") -> time:
    """Return the end time encoded in *slot_portion*.

    Raises ``MalformedRecordError`` when the range separator, the clock time
    or the AM/PM marker is missing or out of range.
    """

    if not isinstance(slot_portion, str) or not slot_portion.strip():
        raise MalformedRecordError(record_id, "slot portion is empty")

    parts = slot_portion.split(RANGE_SEPARATOR)
    if len(parts) < 2:
        raise MalformedRecordError(record_id, f"invalid slot portion: {slot_portion!r}")

    end_text = _PORTION_RE.sub("", parts[1]).strip()
    tokens = end_text.split()
    if len(tokens) < 2:
        raise MalformedRecordError(record_id, f"invalid end time format: {end_text!r}")
    clock, meridiem = tokens[0], tokens[1].lower()
    if meridiem not in {"am", "pm"}:
        raise MalformedRecordError(record_id, f"invalid meridiem in end time: {end_text!r}")

    hour_text, _, minute_text = clock.partition(":")
    try:
        hour = int(hour_text)
        minute = int(minute_text) if minute_text else 0
    except ValueError as exc:
        raise MalformedRecordError(record_id, f"invalid clock time: {clock!r}") from exc
    if not 1 <= hour <= 12 or not 0 <= minute <= 59:
        raise MalformedRecordError(record_id, f"clock time out of range: {clock!r}")

    if meridiem == "pm" and hour != 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    return time(hour, minute)


def slot_portion_end_datetime(
    appointment_date: date,
    slot_portion: str,
    tz: tzinfo,
    *,
    record_id: str = "<unknown>",
) -> datetime:
    """Combine the appointment date with the slot's end time in the clinic timezone."""

    end_time = parse_slot_portion_end(slot_portion, record_id=record_id)
    return datetime.combine(appointment_date, end_time, tzinfo=tz)
