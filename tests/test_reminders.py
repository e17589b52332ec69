import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from agents.reminders import (
    REMINDER_TITLE,
    ReminderSweep,
    build_reminder_entries,
    schedule_appointment_reminders,
)
from connector import InMemoryDocumentStore, StoreError
from notifications.dispatcher import Dispatcher
from notifications.models import REMINDERS_COLLECTION, TYPE_APPOINTMENT
from notifications.registry import ConnectionRegistry
from notifications.store import NotificationStore

APPOINTMENT_TIME = datetime(2024, 6, 2, 10, 0, tzinfo=timezone.utc)


class ReminderSweepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.documents = InMemoryDocumentStore()
        self.notifications = NotificationStore(self.documents)
        self.registry = ConnectionRegistry()
        self.channel = MagicMock()
        self.dispatcher = Dispatcher(self.notifications, self.registry, self.channel)
        self.sweep = ReminderSweep(self.documents, self.dispatcher)
        self.reminder_id, _ = schedule_appointment_reminders(
            self.documents,
            appointment_id="appt-1",
            doctor_id="doctor-1",
            patient_id="patient-1",
            appointment_time=APPOINTMENT_TIME,
            doctor_name="House",
            patient_name="Jane Doe",
            consultation_type="video",
        )

    def _entries(self):
        return self.documents.get_document(REMINDERS_COLLECTION, self.reminder_id).data["reminders"]

    def test_nothing_sent_before_trigger_time(self) -> None:
        result = self.sweep.run(APPOINTMENT_TIME - timedelta(hours=25))

        self.assertEqual(result.changed, 0)
        self.assertEqual(self.notifications.list_unread("doctor-1"), [])
        self.assertEqual([entry["sent"] for entry in self._entries()], [False, False])

    def test_one_hour_reminder_notifies_doctor_and_patient(self) -> None:
        self.sweep.run(APPOINTMENT_TIME - timedelta(hours=24))
        self.assertEqual(len(self.notifications.list_unread("doctor-1")), 1)

        result = self.sweep.run(APPOINTMENT_TIME - timedelta(seconds=3600))

        self.assertEqual(result.transitions, 1)
        doctor = self.notifications.list_unread("doctor-1")
        patient = self.notifications.list_unread("patient-1")
        self.assertEqual(len(doctor), 2)
        self.assertEqual(len(patient), 2)
        self.assertIn(
            "You have a video appointment in 1 hour with Jane Doe", {item.message for item in doctor}
        )
        self.assertIn(
            "You have a video appointment in 1 hour with Dr. House", {item.message for item in patient}
        )
        self.assertTrue(all(item.title == REMINDER_TITLE for item in doctor + patient))
        self.assertTrue(all(item.type == TYPE_APPOINTMENT for item in doctor + patient))
        self.assertEqual([entry["sent"] for entry in self._entries()], [True, True])

    def test_each_entry_is_sent_once_across_ticks(self) -> None:
        start = APPOINTMENT_TIME - timedelta(minutes=30)
        for minute in range(10):
            self.sweep.run(start + timedelta(minutes=minute))

        self.assertEqual(len(self.notifications.list_unread("doctor-1")), 2)
        self.assertEqual(len(self.notifications.list_unread("patient-1")), 2)

    def test_overdue_entries_are_written_back_in_one_update(self) -> None:
        with patch.object(self.documents, "update_document", wraps=self.documents.update_document) as update:
            result = self.sweep.run(APPOINTMENT_TIME)

        update.assert_called_once()
        self.assertEqual(result.transitions, 2)
        self.assertEqual(result.changed, 1)

    def test_failed_dispatch_still_marks_entry_sent(self) -> None:
        original_notify = self.dispatcher.notify

        def flaky_notify(user_id, *args, **kwargs):
            if user_id == "doctor-1":
                raise StoreError("write rejected")
            return original_notify(user_id, *args, **kwargs)

        with patch.object(self.dispatcher, "notify", side_effect=flaky_notify):
            with self.assertLogs("agents.reminders", level="ERROR"):
                self.sweep.run(APPOINTMENT_TIME - timedelta(minutes=59))

        self.assertEqual(len(self.notifications.list_unread("patient-1")), 2)
        self.assertEqual(self.notifications.list_unread("doctor-1"), [])
        self.assertEqual([entry["sent"] for entry in self._entries()], [True, True])

        self.sweep.run(APPOINTMENT_TIME)
        self.assertEqual(self.notifications.list_unread("doctor-1"), [])

    def test_connected_users_receive_live_push(self) -> None:
        self.registry.register("patient-1", "sid-patient")

        self.sweep.run(APPOINTMENT_TIME - timedelta(hours=23))

        self.channel.push.assert_called_once()
        self.assertEqual(self.channel.push.call_args.args[0], "sid-patient")

    def test_malformed_reminder_set_is_skipped(self) -> None:
        self.documents.create_document(REMINDERS_COLLECTION, {"doctorId": "doctor-2"})
        self.documents.create_document(
            REMINDERS_COLLECTION,
            {"doctorId": "d", "patientId": "p", "reminders": [{"sent": False, "message": "no time"}]},
        )

        with self.assertLogs("agents.sweep", level="WARNING"):
            result = self.sweep.run(APPOINTMENT_TIME)

        self.assertEqual(result.skipped, 2)
        self.assertEqual(result.changed, 1)

    def test_writeback_failure_is_counted_and_sweep_continues(self) -> None:
        schedule_appointment_reminders(
            self.documents,
            appointment_id="appt-2",
            doctor_id="doctor-2",
            patient_id="patient-2",
            appointment_time=APPOINTMENT_TIME,
        )
        original_update = self.documents.update_document

        def failing_update(collection, document_id, fields):
            if document_id == self.reminder_id:
                raise StoreError("conflict")
            return original_update(collection, document_id, fields)

        with patch.object(self.documents, "update_document", side_effect=failing_update):
            with self.assertLogs("agents.sweep", level="ERROR"):
                result = self.sweep.run(APPOINTMENT_TIME)

        self.assertEqual(result.failed, 1)
        self.assertEqual(result.changed, 1)


class ReminderSchedulingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.documents = InMemoryDocumentStore()

    def test_entries_are_offset_from_appointment_time(self) -> None:
        entries = build_reminder_entries(APPOINTMENT_TIME, "physical")

        self.assertEqual(
            [entry.time for entry in entries],
            [APPOINTMENT_TIME - timedelta(hours=24), APPOINTMENT_TIME - timedelta(hours=1)],
        )
        self.assertEqual(entries[0].message, "You have a physical appointment tomorrow")
        self.assertFalse(any(entry.sent for entry in entries))

    def test_scheduling_is_idempotent_per_appointment(self) -> None:
        kwargs = dict(
            appointment_id="appt-1",
            doctor_id="doctor-1",
            patient_id="patient-1",
            appointment_time=APPOINTMENT_TIME,
        )
        first_id, created = schedule_appointment_reminders(self.documents, **kwargs)
        second_id, created_again = schedule_appointment_reminders(self.documents, **kwargs)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first_id, second_id)
        self.assertEqual(len(self.documents.list_documents(REMINDERS_COLLECTION)), 1)

    def test_scheduling_requires_aware_time_and_identifiers(self) -> None:
        with self.assertRaises(ValueError):
            schedule_appointment_reminders(
                self.documents,
                appointment_id="appt-1",
                doctor_id="doctor-1",
                patient_id="patient-1",
                appointment_time=datetime(2024, 6, 2, 10, 0),
            )
        with self.assertRaises(ValueError):
            schedule_appointment_reminders(
                self.documents,
                appointment_id="appt-1",
                doctor_id="",
                patient_id="patient-1",
                appointment_time=APPOINTMENT_TIME,
            )


if __name__ == "__main__":
    unittest.main()
