"""Error types raised by the notification core."""

from __future__ import annotations


class ValidationError(ValueError):
    """Raised when a request is missing a required field or carries an invalid value."""


class MalformedRecordError(ValueError):
    """Raised when a stored document lacks an expected field or cannot be parsed."""

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(f"{record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class DeliveryError(RuntimeError):
    """Raised when a payload cannot be pushed over a live channel."""
