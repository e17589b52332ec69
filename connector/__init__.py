"""Connector interfaces for the document store backing the notification service."""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

__all__ = [
    "Document",
    "DocumentNotFoundError",
    "DocumentStore",
    "Filter",
    "InMemoryDocumentStore",
    "StoreError",
]

# (field, operator, value); operators: ==, !=, <, <=, >, >=
Filter = Tuple[str, str, Any]

_OPERATORS = {
    "==": lambda left, right: left == right,
    "!=": lambda left, right: left != right,
    "<": lambda left, right: left < right,
    "<=": lambda left, right: left <= right,
    ">": lambda left, right: left > right,
    ">=": lambda left, right: left >= right,
}


class StoreError(RuntimeError):
    """Raised when the document store cannot complete an operation."""


class DocumentNotFoundError(StoreError):
    """Raised when a document addressed for update or delete does not exist."""


@dataclass
class Document:
    """A stored document: its id, the collection path it lives in and its fields."""

    id: str
    collection: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"


class DocumentStore(Protocol):
    """Minimal interface the notification core requires from a document store."""

    def list_documents(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Return the documents of *collection* matching every filter."""

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        """Return a single document, or ``None`` when it does not exist."""

    def create_document(self, collection: str, data: Mapping[str, Any]) -> str:
        """Insert a document with a store-assigned id and return the id."""

    def update_document(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        """Merge *fields* into an existing document."""

    def delete_document(self, collection: str, document_id: str) -> None:
        """Delete a document."""

    def batch_update(self, collection: str, updates: Mapping[str, Mapping[str, Any]]) -> None:
        """Apply several updates in one all-or-nothing write."""


def _validate_collection(collection: str) -> str:
    if not isinstance(collection, str) or not collection.strip("/"):
        raise ValueError("collection must be a non-empty path")
    segments = collection.strip("/").split("/")
    if len(segments) % 2 == 0:
        raise ValueError(f"'{collection}' is a document path, not a collection path")
    return "/".join(segments)


def _matches(data: Mapping[str, Any], filters: Iterable[Filter]) -> bool:
    for field_name, operator, expected in filters:
        try:
            compare = _OPERATORS[operator]
        except KeyError as exc:
            raise ValueError(f"Unsupported filter operator '{operator}'") from exc
        if field_name not in data:
            return False
        try:
            if not compare(data[field_name], expected):
                return False
        except TypeError:
            return False
    return True


class InMemoryDocumentStore:
    """In-memory document store used for local runs and tests.

    Collections are addressed by slash-separated paths, so sub-collections
    such as ``doctors/<id>/availabilities`` work the same way as they do in
    the hosted store.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def list_documents(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        collection = _validate_collection(collection)
        with self._lock:
            items = [
                Document(id=doc_id, collection=collection, data=copy.deepcopy(data))
                for doc_id, data in self._collections.get(collection, {}).items()
                if _matches(data, filters or ())
            ]
        if order_by:
            items = [item for item in items if item.data.get(order_by) is not None]
            items.sort(key=lambda item: item.data[order_by], reverse=descending)
        if limit is not None:
            items = items[:limit]
        return items

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        collection = _validate_collection(collection)
        with self._lock:
            data = self._collections.get(collection, {}).get(document_id)
            if data is None:
                return None
            return Document(id=document_id, collection=collection, data=copy.deepcopy(data))

    def create_document(self, collection: str, data: Mapping[str, Any]) -> str:
        collection = _validate_collection(collection)
        document_id = uuid.uuid4().hex
        with self._lock:
            self._collections.setdefault(collection, {})[document_id] = copy.deepcopy(dict(data))
        return document_id

    def set_document(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        """Create or replace a document under a caller-chosen id."""

        collection = _validate_collection(collection)
        with self._lock:
            self._collections.setdefault(collection, {})[document_id] = copy.deepcopy(dict(data))

    def update_document(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        collection = _validate_collection(collection)
        with self._lock:
            stored = self._collections.get(collection, {}).get(document_id)
            if stored is None:
                raise DocumentNotFoundError(f"No document '{collection}/{document_id}'")
            stored.update(copy.deepcopy(dict(fields)))

    def delete_document(self, collection: str, document_id: str) -> None:
        collection = _validate_collection(collection)
        with self._lock:
            self._collections.get(collection, {}).pop(document_id, None)

    def batch_update(self, collection: str, updates: Mapping[str, Mapping[str, Any]]) -> None:
        collection = _validate_collection(collection)
        with self._lock:
            documents = self._collections.get(collection, {})
            missing = [doc_id for doc_id in updates if doc_id not in documents]
            if missing:
                raise DocumentNotFoundError(
                    f"Batch aborted; missing documents in '{collection}': {', '.join(sorted(missing))}"
                )
            for doc_id, fields in updates.items():
                documents[doc_id].update(copy.deepcopy(dict(fields)))
