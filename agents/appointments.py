"""Moves confirmed appointments to ``expired`` once their slot has ended."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from agents.sweep import Sweep
from connector import Document
from notifications.models import (
    APPOINTMENTS_COLLECTION,
    STATUS_CONFIRMED,
    STATUS_EXPIRED,
    Appointment,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE = timedelta(seconds=60)
DEFAULT_EXPIRABLE_STATUSES = frozenset({STATUS_CONFIRMED})


class AppointmentExpirySweep(Sweep[Appointment]):
    """Expires appointments whose slot end time plus the grace period has passed.

    Appointments already ``expired`` are never written again, so repeated
    runs leave their ``updatedAt`` untouched.
    """

    name = "appointment_expiry"

    def __init__(
        self,
        store,
        *,
        grace: timedelta = DEFAULT_GRACE,
        expirable_statuses: Optional[Iterable[str]] = None,
        **kwargs,
    ) -> None:
        super().__init__(store, **kwargs)
        self._grace = grace
        self._expirable = frozenset(expirable_statuses or DEFAULT_EXPIRABLE_STATUSES)

    def load(self) -> List[Document]:
        return self._store.list_documents(APPOINTMENTS_COLLECTION)

    def parse(self, document: Document) -> Appointment:
        return Appointment.from_document(document, self._tz)

    def is_due(self, record: Appointment, now: datetime) -> bool:
        if record.status == STATUS_EXPIRED:
            return False
        expires_at = record.end_datetime(self._tz) + self._grace
        return record.status in self._expirable and now >= expires_at

    def apply(self, record: Appointment, now: datetime) -> int:
        self._store.update_document(
            APPOINTMENTS_COLLECTION,
            record.id,
            {"status": STATUS_EXPIRED, "updatedAt": now},
        )
        logger.info("Appointment %s updated to expired", record.id)
        return 1
