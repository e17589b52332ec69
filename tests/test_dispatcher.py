import unittest
from unittest.mock import MagicMock, patch

from connector import InMemoryDocumentStore, StoreError
from notifications.dispatcher import (
    BROADCAST_FANOUT,
    BROADCAST_TRANSIENT,
    BROADCAST_UNADDRESSED,
    LAB_STATUS_EVENT,
    NOTIFICATION_EVENT,
    Dispatcher,
)
from notifications.errors import ValidationError
from notifications.models import NOTIFICATIONS_COLLECTION, TYPE_LAB_STATUS_UPDATE
from notifications.registry import ConnectionRegistry
from notifications.store import NotificationStore


class DispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.documents = InMemoryDocumentStore()
        self.store = NotificationStore(self.documents)
        self.registry = ConnectionRegistry()
        self.channel = MagicMock()

    def _dispatcher(self, mode: str = BROADCAST_TRANSIENT) -> Dispatcher:
        return Dispatcher(self.store, self.registry, self.channel, broadcast_mode=mode)

    def _stored(self):
        return self.documents.list_documents(NOTIFICATIONS_COLLECTION)

    def test_notify_persists_and_pushes_to_connected_user(self) -> None:
        self.registry.register("user-1", "sid-1")

        notification = self._dispatcher().notify("user-1", "Hello", "World", "statusUpdate")

        self.assertIsNotNone(notification.id)
        self.channel.push.assert_called_once()
        channel_id, event, payload = self.channel.push.call_args.args
        self.assertEqual((channel_id, event), ("sid-1", NOTIFICATION_EVENT))
        self.assertEqual(payload["id"], notification.id)
        self.assertEqual(payload["type"], "statusUpdate")
        self.assertIsInstance(payload["createdAt"], str)

    def test_notify_offline_user_is_left_for_pull(self) -> None:
        self._dispatcher().notify("user-1", "Hello", "World")

        self.channel.push.assert_not_called()
        self.assertEqual(len(self.store.list_unread("user-1")), 1)

    def test_push_failure_is_logged_and_record_kept(self) -> None:
        self.registry.register("user-1", "sid-1")
        self.channel.push.side_effect = ConnectionError("socket closed")

        with self.assertLogs("notifications.dispatcher", level="ERROR") as logs:
            self._dispatcher().notify("user-1", "Hello", "World")

        self.assertIn("socket closed", logs.output[0])
        self.assertEqual(len(self.store.list_unread("user-1")), 1)
        self.channel.push.assert_called_once()

    def test_store_failure_propagates_without_push(self) -> None:
        self.registry.register("user-1", "sid-1")

        with patch.object(self.documents, "create_document", side_effect=StoreError("down")):
            with self.assertRaises(StoreError):
                self._dispatcher().notify("user-1", "Hello", "World")

        self.channel.push.assert_not_called()

    def test_notify_requires_recipient(self) -> None:
        with self.assertRaises(ValidationError):
            self._dispatcher().notify("", "Hello", "World")

    def test_transient_broadcast_pushes_without_persisting(self) -> None:
        persisted = self._dispatcher(BROADCAST_TRANSIENT).broadcast("System", "Maintenance tonight")

        self.assertEqual(persisted, [])
        self.assertEqual(self._stored(), [])
        event, payload = self.channel.push_all.call_args.args
        self.assertEqual(event, NOTIFICATION_EVENT)
        self.assertNotIn("userId", payload)

    def test_unaddressed_broadcast_persists_single_record(self) -> None:
        self.registry.register("user-1", "sid-1")
        self.registry.register("user-2", "sid-2")

        persisted = self._dispatcher(BROADCAST_UNADDRESSED).broadcast("System", "Maintenance tonight")

        stored = self._stored()
        self.assertEqual(len(persisted), 1)
        self.assertEqual(len(stored), 1)
        self.assertNotIn("userId", stored[0].data)
        self.channel.push_all.assert_called_once()

    def test_fanout_broadcast_persists_one_record_per_connected_user(self) -> None:
        self.registry.register("user-1", "sid-1")
        self.registry.register("user-2", "sid-2")

        persisted = self._dispatcher(BROADCAST_FANOUT).broadcast("System", "Maintenance tonight")

        self.assertEqual(sorted(item.user_id for item in persisted), ["user-1", "user-2"])
        self.assertEqual(len(self._stored()), 2)
        pushed_to = sorted(call.args[0] for call in self.channel.push.call_args_list)
        self.assertEqual(pushed_to, ["sid-1", "sid-2"])
        self.channel.push_all.assert_not_called()

    def test_unknown_broadcast_mode_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Dispatcher(self.store, self.registry, broadcast_mode="everyone")

    def test_send_addressed_payload_keeps_extra_fields(self) -> None:
        self.registry.register("user-1", "sid-1")

        delivered = self._dispatcher().send(
            {"userId": "user-1", "title": "Status", "message": "Approved", "appointmentId": "a-1"}
        )

        self.assertEqual(len(delivered), 1)
        stored = self._stored()[0].data
        self.assertEqual(stored["appointmentId"], "a-1")
        self.assertEqual(stored["userId"], "user-1")
        self.channel.push_all.assert_not_called()

    def test_send_without_recipient_broadcasts(self) -> None:
        self._dispatcher().send({"title": "All", "message": "Everyone"})

        self.channel.push_all.assert_called_once()
        self.channel.push.assert_not_called()

    def test_send_requires_message(self) -> None:
        with self.assertRaises(ValidationError):
            self._dispatcher().send({"userId": "user-1", "title": "Empty"})

    def test_lab_status_notification(self) -> None:
        self.registry.register("lab-1", "sid-lab")

        notification = self._dispatcher().notify_lab_status("lab-1", "approved", "Documents verified")

        self.assertEqual(
            notification.message,
            "Your lab status has been updated to: approved Remarks: Documents verified",
        )
        self.assertEqual(notification.type, TYPE_LAB_STATUS_UPDATE)
        self.assertEqual(self.channel.push.call_args.args[1], LAB_STATUS_EVENT)

    def test_lab_status_without_remarks(self) -> None:
        notification = self._dispatcher().notify_lab_status("lab-1", "rejected")
        self.assertEqual(notification.message, "Your lab status has been updated to: rejected")

    def test_lab_status_requires_lab_and_status(self) -> None:
        with self.assertRaises(ValidationError):
            self._dispatcher().notify_lab_status("", "approved")
        with self.assertRaises(ValidationError):
            self._dispatcher().notify_lab_status("lab-1", "")


if __name__ == "__main__":
    unittest.main()
