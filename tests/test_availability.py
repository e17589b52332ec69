import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from agents.availability import AvailabilityExpirySweep
from connector import InMemoryDocumentStore, StoreError
from notifications.models import DOCTORS_COLLECTION, availability_collection

END_TIME = datetime(2024, 6, 1, 17, 0, tzinfo=timezone.utc)


class AvailabilityExpirySweepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.documents = InMemoryDocumentStore()
        self.documents.set_document(DOCTORS_COLLECTION, "doctor-1", {"name": "House"})
        self.documents.set_document(DOCTORS_COLLECTION, "doctor-2", {"name": "Wilson"})
        self.sweep = AvailabilityExpirySweep(self.documents)

    def _add_slot(self, doctor_id: str, end_time, **extra) -> str:
        data = {"date": "2024-06-01", "mode": "online", "price": 500, "slotDuration": 30}
        if end_time is not None:
            data["endTime"] = end_time
        data.update(extra)
        return self.documents.create_document(availability_collection(doctor_id), data)

    def _slots(self, doctor_id: str):
        return self.documents.list_documents(availability_collection(doctor_id))

    def test_slot_survives_within_grace_period(self) -> None:
        self._add_slot("doctor-1", END_TIME.isoformat())

        result = self.sweep.run(END_TIME + timedelta(seconds=59))

        self.assertEqual(result.changed, 0)
        self.assertEqual(len(self._slots("doctor-1")), 1)

    def test_slot_deleted_once_grace_period_elapses(self) -> None:
        self._add_slot("doctor-1", END_TIME.isoformat())

        result = self.sweep.run(END_TIME + timedelta(seconds=60))

        self.assertEqual(result.changed, 1)
        self.assertEqual(self._slots("doctor-1"), [])

    def test_only_expired_slots_removed_across_doctors(self) -> None:
        self._add_slot("doctor-1", END_TIME)
        keep = self._add_slot("doctor-1", END_TIME + timedelta(hours=2))
        self._add_slot("doctor-2", END_TIME - timedelta(hours=1))

        result = self.sweep.run(END_TIME + timedelta(minutes=5))

        self.assertEqual(result.examined, 3)
        self.assertEqual(result.changed, 2)
        self.assertEqual([slot.id for slot in self._slots("doctor-1")], [keep])
        self.assertEqual(self._slots("doctor-2"), [])

    def test_slot_without_end_time_is_skipped_and_logged(self) -> None:
        self._add_slot("doctor-1", None)
        self._add_slot("doctor-1", END_TIME.isoformat())

        with self.assertLogs("agents.sweep", level="WARNING") as logs:
            result = self.sweep.run(END_TIME + timedelta(minutes=5))

        self.assertIn("endTime", logs.output[0])
        self.assertEqual(result.skipped, 1)
        self.assertEqual(result.changed, 1)
        self.assertEqual(len(self._slots("doctor-1")), 1)

    def test_repeated_runs_are_harmless(self) -> None:
        self._add_slot("doctor-1", END_TIME.isoformat())
        later = END_TIME + timedelta(minutes=5)

        self.sweep.run(later)
        second = self.sweep.run(later)

        self.assertEqual(second.examined, 0)
        self.assertEqual(second.changed, 0)

    def test_naive_end_time_uses_clinic_timezone(self) -> None:
        clinic = timezone(timedelta(hours=5, minutes=30))
        sweep = AvailabilityExpirySweep(self.documents, tz=clinic)
        self._add_slot("doctor-1", "2024-06-01T17:00:00")
        clinic_end_utc = datetime(2024, 6, 1, 11, 30, tzinfo=timezone.utc)

        sweep.run(clinic_end_utc + timedelta(seconds=30))
        self.assertEqual(len(self._slots("doctor-1")), 1)

        sweep.run(clinic_end_utc + timedelta(seconds=60))
        self.assertEqual(self._slots("doctor-1"), [])

    def test_clock_only_end_time_is_anchored_to_slot_date(self) -> None:
        self._add_slot("doctor-1", "17:00", startTime="09:00")

        self.sweep.run(END_TIME + timedelta(seconds=59))
        self.assertEqual(len(self._slots("doctor-1")), 1)

        result = self.sweep.run(END_TIME + timedelta(seconds=60))
        self.assertEqual(result.skipped, 0)
        self.assertEqual(self._slots("doctor-1"), [])

    def test_clock_only_end_time_uses_clinic_timezone(self) -> None:
        clinic = timezone(timedelta(hours=5, minutes=30))
        sweep = AvailabilityExpirySweep(self.documents, tz=clinic)
        self._add_slot("doctor-1", "17:00")
        clinic_end_utc = datetime(2024, 6, 1, 11, 30, tzinfo=timezone.utc)

        sweep.run(clinic_end_utc + timedelta(seconds=59))
        self.assertEqual(len(self._slots("doctor-1")), 1)

        sweep.run(clinic_end_utc + timedelta(seconds=60))
        self.assertEqual(self._slots("doctor-1"), [])

    def test_clock_only_end_time_without_date_is_skipped(self) -> None:
        self._add_slot("doctor-1", "17:00", date=None)
        self._add_slot("doctor-1", "25:00")

        with self.assertLogs("agents.sweep", level="WARNING"):
            result = self.sweep.run(END_TIME + timedelta(days=1))

        self.assertEqual(result.skipped, 2)
        self.assertEqual(len(self._slots("doctor-1")), 2)

    def test_listing_failure_for_one_doctor_does_not_stop_others(self) -> None:
        self._add_slot("doctor-1", END_TIME)
        self._add_slot("doctor-2", END_TIME)
        original_list = self.documents.list_documents

        def flaky_list(collection, *args, **kwargs):
            if collection == availability_collection("doctor-1"):
                raise StoreError("permission denied")
            return original_list(collection, *args, **kwargs)

        with patch.object(self.documents, "list_documents", side_effect=flaky_list):
            with self.assertLogs("agents.availability", level="ERROR"):
                result = self.sweep.run(END_TIME + timedelta(minutes=5))

        self.assertEqual(result.changed, 1)
        self.assertEqual(self._slots("doctor-2"), [])
        self.assertEqual(len(self._slots("doctor-1")), 1)


if __name__ == "__main__":
    unittest.main()
