"""Persistence boundary for notification records."""

from __future__ import annotations

import logging
from typing import List

from connector import DocumentNotFoundError, DocumentStore
from notifications.errors import ValidationError
from notifications.models import NOTIFICATIONS_COLLECTION, Notification

logger = logging.getLogger(__name__)


class NotificationStore:
    """Creates, lists and marks notifications read in the document store.

    Store failures propagate as ``StoreError``; nothing here swallows them.
    """

    def __init__(self, store: DocumentStore, *, collection: str = NOTIFICATIONS_COLLECTION) -> None:
        self._store = store
        self._collection = collection

    def create(self, notification: Notification) -> str:
        notification_id = self._store.create_document(self._collection, notification.to_document())
        notification.id = notification_id
        logger.debug("Stored notification %s for %s", notification_id, notification.user_id or "<all>")
        return notification_id

    def list_unread(self, user_id: str) -> List[Notification]:
        """Unread notifications for *user_id*, newest first."""

        if not user_id:
            raise ValidationError("userId is required")
        documents = self._store.list_documents(
            self._collection,
            [("userId", "==", user_id), ("read", "==", False)],
            order_by="createdAt",
            descending=True,
        )
        return [Notification.from_document(document) for document in documents]

    def mark_read(self, notification_id: str) -> None:
        if not notification_id:
            raise ValidationError("notificationId is required")
        document = self._store.get_document(self._collection, notification_id)
        if document is None:
            raise DocumentNotFoundError(f"Notification '{notification_id}' does not exist")
        if document.data.get("read") is True:
            return
        self._store.update_document(self._collection, notification_id, {"read": True})

    def mark_all_read(self, user_id: str) -> int:
        """Flip every unread notification of *user_id* in one batched write; return the count."""

        if not user_id:
            raise ValidationError("userId is required")
        documents = self._store.list_documents(
            self._collection, [("userId", "==", user_id), ("read", "==", False)]
        )
        if not documents:
            return 0
        self._store.batch_update(
            self._collection, {document.id: {"read": True} for document in documents}
        )
        logger.info("Marked %d notifications read for %s", len(documents), user_id)
        return len(documents)
