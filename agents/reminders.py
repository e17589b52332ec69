"""Appointment reminder scheduling and delivery."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from agents.sweep import Sweep
from connector import Document, DocumentStore
from notifications.dispatcher import Dispatcher
from notifications.models import (
    REMINDERS_COLLECTION,
    TYPE_APPOINTMENT,
    ReminderEntry,
    ReminderSet,
)

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Appointment Reminder"

# (offset before the appointment, message template)
DEFAULT_REMINDER_OFFSETS: Tuple[Tuple[timedelta, str], ...] = (
    (timedelta(hours=24), "You have a {type} appointment tomorrow"),
    (timedelta(hours=1), "You have a {type} appointment in 1 hour"),
)


def build_reminder_entries(
    appointment_time: datetime,
    consultation_type: str,
    offsets: Sequence[Tuple[timedelta, str]] = DEFAULT_REMINDER_OFFSETS,
) -> List[ReminderEntry]:
    return [
        ReminderEntry(
            time=appointment_time - offset,
            message=template.format(type=consultation_type or "consultation"),
        )
        for offset, template in offsets
    ]


def schedule_appointment_reminders(
    store: DocumentStore,
    *,
    appointment_id: str,
    doctor_id: str,
    patient_id: str,
    appointment_time: datetime,
    doctor_name: str = "",
    patient_name: str = "",
    consultation_type: str = "",
    offsets: Sequence[Tuple[timedelta, str]] = DEFAULT_REMINDER_OFFSETS,
) -> Tuple[str, bool]:
    """Create the reminder set for a confirmed appointment.

    Returns ``(reminder_set_id, created)``. Scheduling the same appointment
    twice returns the existing set instead of writing a duplicate.
    """

    for label, value in (
        ("appointment_id", appointment_id),
        ("doctor_id", doctor_id),
        ("patient_id", patient_id),
    ):
        if not value:
            raise ValueError(f"{label} must be provided")
    if appointment_time.tzinfo is None:
        raise ValueError("appointment_time must be timezone-aware")

    existing = store.list_documents(
        REMINDERS_COLLECTION, [("appointmentId", "==", appointment_id)], limit=1
    )
    if existing:
        logger.debug("Reminders for appointment %s already scheduled", appointment_id)
        return existing[0].id, False

    reminder_set = ReminderSet(
        id="",
        appointment_id=appointment_id,
        doctor_id=doctor_id,
        patient_id=patient_id,
        doctor_name=doctor_name,
        patient_name=patient_name,
        appointment_time=appointment_time,
        consultation_type=consultation_type,
        entries=build_reminder_entries(appointment_time, consultation_type, offsets),
    )
    reminder_set_id = store.create_document(REMINDERS_COLLECTION, reminder_set.to_document())
    logger.info("Scheduled %d reminders for appointment %s", len(reminder_set.entries), appointment_id)
    return reminder_set_id, True


class ReminderSweep(Sweep[ReminderSet]):
    """Sends every reminder whose trigger time has passed, exactly once.

    Both the doctor and the patient get their own notification. An entry is
    marked sent once its time has passed even if one of those deliveries
    failed; a dropped reminder is not retried.
    """

    name = "appointment_reminders"

    def __init__(self, store, dispatcher: Dispatcher, **kwargs) -> None:
        super().__init__(store, **kwargs)
        self._dispatcher = dispatcher

    def load(self) -> List[Document]:
        return self._store.list_documents(REMINDERS_COLLECTION)

    def parse(self, document: Document) -> ReminderSet:
        return ReminderSet.from_document(document, self._tz)

    def is_due(self, record: ReminderSet, now: datetime) -> bool:
        return any(entry.is_due(now) for entry in record.entries)

    def apply(self, record: ReminderSet, now: datetime) -> int:
        sent = 0
        for entry in record.entries:
            if not entry.is_due(now):
                continue
            self._deliver(record.doctor_id, f"{entry.message} with {record.patient_name}", record.id)
            self._deliver(record.patient_id, f"{entry.message} with Dr. {record.doctor_name}", record.id)
            entry.sent = True
            sent += 1
        # The whole entry list is written back in one update per document.
        self._store.update_document(REMINDERS_COLLECTION, record.id, record.reminders_document())
        return sent

    def _deliver(self, user_id: str, message: str, record_id: str) -> Optional[str]:
        try:
            notification = self._dispatcher.notify(user_id, REMINDER_TITLE, message, TYPE_APPOINTMENT)
        except Exception:  # noqa: BLE001 - the other recipient must still be notified
            logger.exception("Reminder %s could not be delivered to %s", record_id, user_id)
            return None
        return notification.id
