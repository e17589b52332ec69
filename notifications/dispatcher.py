"""Single entry point for telling a user that something happened.

Every addressed notification is persisted first and pushed second. The
push is best effort: a failure is logged and neither retried nor allowed to
undo the stored record, which stays available through the unread listing.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

from notifications.errors import DeliveryError, ValidationError
from notifications.models import TYPE_GENERAL, TYPE_LAB_STATUS_UPDATE, Notification
from notifications.registry import ConnectionRegistry
from notifications.store import NotificationStore

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "notification"
LAB_STATUS_EVENT = "labStatusUpdate"

BROADCAST_TRANSIENT = "transient"
BROADCAST_UNADDRESSED = "unaddressed"
BROADCAST_FANOUT = "fanout"
BROADCAST_MODES = (BROADCAST_TRANSIENT, BROADCAST_UNADDRESSED, BROADCAST_FANOUT)


class PushChannel(Protocol):
    """Transport able to push JSON payloads to live connections."""

    def push(self, channel_id: str, event: str, payload: Mapping[str, Any]) -> None:
        """Push *payload* to one connection."""

    def push_all(self, event: str, payload: Mapping[str, Any]) -> None:
        """Push *payload* to every live connection."""


class Dispatcher:
    """Persists notifications and pushes them to connected users."""

    def __init__(
        self,
        store: NotificationStore,
        registry: ConnectionRegistry,
        channel: Optional[PushChannel] = None,
        *,
        broadcast_mode: str = BROADCAST_TRANSIENT,
    ) -> None:
        if broadcast_mode not in BROADCAST_MODES:
            raise ValueError(f"broadcast_mode must be one of {', '.join(BROADCAST_MODES)}")
        self._store = store
        self._registry = registry
        self._channel = channel
        self.broadcast_mode = broadcast_mode

    def attach_channel(self, channel: PushChannel) -> None:
        self._channel = channel

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: str = TYPE_GENERAL,
        *,
        event: str = NOTIFICATION_EVENT,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Notification:
        """Persist a notification for *user_id* and push it if they are connected."""

        if not user_id:
            raise ValidationError("userId is required")
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type or TYPE_GENERAL,
            extra=dict(extra or {}),
        )
        self._store.create(notification)
        self._push_to_user(user_id, event, notification.to_payload())
        return notification

    def broadcast(
        self,
        title: str,
        message: str,
        payload: Optional[Mapping[str, Any]] = None,
        type: str = TYPE_GENERAL,
        *,
        event: str = NOTIFICATION_EVENT,
    ) -> List[Notification]:
        """Deliver a notification that has no particular recipient.

        What gets persisted depends on ``broadcast_mode``: nothing
        (``transient``), one unaddressed record (``unaddressed``) or one record
        per connected user (``fanout``). Returns the persisted records.
        """

        extra = dict(payload or {})
        if self.broadcast_mode == BROADCAST_FANOUT:
            return [
                self.notify(user_id, title, message, type, event=event, extra=extra)
                for user_id in self._registry.connected_users()
            ]

        notification = Notification(title=title, message=message, type=type or TYPE_GENERAL, extra=extra)
        persisted: List[Notification] = []
        if self.broadcast_mode == BROADCAST_UNADDRESSED:
            self._store.create(notification)
            persisted.append(notification)
        self._push_everywhere(event, notification.to_payload())
        return persisted

    def send(self, payload: Mapping[str, Any]) -> List[Notification]:
        """Deliver a client-supplied notification payload.

        Addressed payloads go to their recipient only; anything else is
        broadcast according to the configured policy.
        """

        if not isinstance(payload, Mapping):
            raise ValidationError("notification payload must be a JSON object")
        message = payload.get("message")
        if not message:
            raise ValidationError("message is required")
        title = str(payload.get("title") or "")
        type_ = str(payload.get("type") or TYPE_GENERAL)
        reserved = {"userId", "title", "message", "type", "read", "createdAt", "id"}
        extra: Dict[str, Any] = {key: value for key, value in payload.items() if key not in reserved}

        user_id = payload.get("userId")
        if user_id:
            return [self.notify(str(user_id), title, str(message), type_, extra=extra)]
        return self.broadcast(title, str(message), extra, type_)

    def notify_lab_status(self, lab_id: str, status: str, remarks: Optional[str] = None) -> Notification:
        if not lab_id:
            raise ValidationError("labId is required")
        if not status:
            raise ValidationError("status is required")
        message = f"Your lab status has been updated to: {status}"
        if remarks:
            message += f" Remarks: {remarks}"
        return self.notify(
            lab_id,
            "Lab Status Update",
            message,
            TYPE_LAB_STATUS_UPDATE,
            event=LAB_STATUS_EVENT,
        )

    def _push_to_user(self, user_id: str, event: str, payload: Mapping[str, Any]) -> bool:
        channel_id = self._registry.resolve(user_id)
        if channel_id is None or self._channel is None:
            logger.debug("User %s is offline; notification left for pull", user_id)
            return False
        try:
            self._deliver(lambda: self._channel.push(channel_id, event, payload))
        except DeliveryError as exc:
            logger.error("Live push to user %s on channel %s failed: %s", user_id, channel_id, exc)
            return False
        return True

    def _push_everywhere(self, event: str, payload: Mapping[str, Any]) -> bool:
        if self._channel is None:
            return False
        try:
            self._deliver(lambda: self._channel.push_all(event, payload))
        except DeliveryError as exc:
            logger.error("Broadcast push failed: %s", exc)
            return False
        return True

    @staticmethod
    def _deliver(action) -> None:
        try:
            action()
        except DeliveryError:
            raise
        except Exception as exc:  # noqa: BLE001 - transports raise arbitrary errors
            raise DeliveryError(str(exc)) from exc
