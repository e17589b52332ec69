"""Notification core: registry, persistence adapter and dispatcher."""

from .dispatcher import (
    BROADCAST_FANOUT,
    BROADCAST_MODES,
    BROADCAST_TRANSIENT,
    BROADCAST_UNADDRESSED,
    Dispatcher,
    PushChannel,
)
from .errors import DeliveryError, MalformedRecordError, ValidationError
from .registry import ConnectionRegistry
from .store import NotificationStore

__all__ = [
    "BROADCAST_FANOUT",
    "BROADCAST_MODES",
    "BROADCAST_TRANSIENT",
    "BROADCAST_UNADDRESSED",
    "ConnectionRegistry",
    "DeliveryError",
    "Dispatcher",
    "MalformedRecordError",
    "NotificationStore",
    "PushChannel",
    "ValidationError",
]
