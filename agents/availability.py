"""Deletes doctor availability slots once they have ended."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterator

from agents.sweep import Sweep
from connector import Document, StoreError
from notifications.models import DOCTORS_COLLECTION, AvailabilitySlot, availability_collection

logger = logging.getLogger(__name__)

DEFAULT_GRACE = timedelta(seconds=60)


class AvailabilityExpirySweep(Sweep[AvailabilitySlot]):
    """Removes every slot whose end time plus the grace period has passed."""

    name = "availability_expiry"

    def __init__(self, store, *, grace: timedelta = DEFAULT_GRACE, **kwargs) -> None:
        super().__init__(store, **kwargs)
        self._grace = grace

    def load(self) -> Iterator[Document]:
        for doctor in self._store.list_documents(DOCTORS_COLLECTION):
            try:
                slots = self._store.list_documents(availability_collection(doctor.id))
            except StoreError as exc:
                logger.error("Could not list availability for doctor %s: %s", doctor.id, exc)
                continue
            yield from slots

    def parse(self, document: Document) -> AvailabilitySlot:
        doctor_id = document.collection.split("/")[1]
        return AvailabilitySlot.from_document(document, doctor_id, self._tz)

    def is_due(self, record: AvailabilitySlot, now: datetime) -> bool:
        return now >= record.expires_at(self._grace)

    def apply(self, record: AvailabilitySlot, now: datetime) -> int:
        self._store.delete_document(record.collection, record.id)
        logger.info("Deleted expired availability %s for doctor %s", record.id, record.doctor_id)
        return 1
