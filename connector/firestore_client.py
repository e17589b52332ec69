"""Hosted document database client.

This module provides a client for the document database's REST interface
that satisfies the ``DocumentStore`` contract used by the notification core.
The client manages HTTP session handling with retries, translates Python
values to and from the database's typed value encoding, and maps transport
failures onto ``StoreError`` so callers never see raw ``requests``
exceptions.
"""
from __future__ import annotations

import base64
import logging
import os
import re
import threading
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import requests
from google.auth import default as google_auth_default
from google.auth.credentials import Credentials
from google.auth.exceptions import DefaultCredentialsError, GoogleAuthError
from google.auth.transport.requests import Request as AuthRequest
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from connector import Document, DocumentNotFoundError, Filter, StoreError

__all__ = ["FirestoreClient", "decode_fields", "decode_value", "encode_fields", "encode_value"]


# Module-level logger only; handlers are configured by the hosting process.
logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
DEFAULT_PAGE_SIZE = 300

DEFAULT_BASE_URL = os.getenv("FIRESTORE_BASE_URL", "https://firestore.googleapis.com/v1")
DEFAULT_DATABASE = os.getenv("FIRESTORE_DATABASE", "(default)")
FIRESTORE_SCOPES = ("https://www.googleapis.com/auth/datastore",)

_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
}

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def encode_value(value: Any) -> Dict[str, Any]:
    """Encode a Python value as a typed document value."""

    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    if isinstance(value, date):
        return {"stringValue": value.isoformat()}
    if isinstance(value, bytes):
        return {"bytesValue": base64.b64encode(value).decode("ascii")}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"Cannot encode value of type {type(value).__name__}")


def encode_fields(data: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {str(key): encode_value(item) for key, item in data.items()}


def _parse_timestamp(raw: str) -> datetime:
    # Nanosecond precision is truncated to what datetime can hold.
    return datetime.fromisoformat(_FRACTION_RE.sub(r".\1", raw))


def decode_value(value: Mapping[str, Any]) -> Any:
    """Decode a typed document value into a Python value."""

    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return _parse_timestamp(value["timestampValue"])
    if "bytesValue" in value:
        return base64.b64decode(value["bytesValue"])
    if "referenceValue" in value:
        return value["referenceValue"]
    if "geoPointValue" in value:
        point = value["geoPointValue"]
        return {"latitude": point.get("latitude", 0.0), "longitude": point.get("longitude", 0.0)}
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    raise ValueError(f"Unsupported document value: {sorted(value)}")


def decode_fields(fields: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    return {key: decode_value(item) for key, item in fields.items()}


def _split_collection(collection: str) -> Tuple[str, str]:
    """Split ``a/b/c`` into the parent document path ``a/b`` and collection id ``c``."""

    segments = collection.strip("/").split("/")
    if not segments[0] or len(segments) % 2 == 0:
        raise ValueError(f"'{collection}' is not a collection path")
    return "/".join(segments[:-1]), segments[-1]


class FirestoreClient:
    """Client for the hosted document database's REST API."""

    def __init__(
        self,
        *,
        project_id: str,
        database: str = DEFAULT_DATABASE,
        base_url: str = DEFAULT_BASE_URL,
        emulator_host: Optional[str] = None,
        access_token: Optional[str] = None,
        credentials: Optional[Credentials] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id must be provided")
        if emulator_host:
            base_url = f"http://{emulator_host.rstrip('/')}/v1"
            # The emulator accepts this fixed token as an administrative credential.
            access_token = access_token or "owner"
        if not base_url:
            raise ValueError("base_url must be provided")
        if not access_token and credentials is None:
            try:
                credentials, _ = google_auth_default(scopes=list(FIRESTORE_SCOPES))
            except DefaultCredentialsError as exc:
                raise ValueError(
                    "access_token must be provided when no application default credentials are available"
                ) from exc

        self.base_url = base_url.rstrip("/")
        self.database_path = f"projects/{project_id}/databases/{database}"
        self.access_token = access_token
        self.timeout = timeout
        self.page_size = page_size
        self._session = session or self._build_session(
            max_retries=max_retries, backoff_factor=backoff_factor
        )
        # A fixed access token wins over credentials; it is never refreshed.
        self._credentials = None if access_token else credentials
        self._token_lock = threading.Lock()

    def _build_session(self, *, max_retries: int, backoff_factor: float) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            read=max_retries,
            connect=max_retries,
            status=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(429, 500, 502, 503, 504),
            # Creates are POSTs and must not be replayed.
            allowed_methods=("GET", "PATCH", "DELETE", "OPTIONS"),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @property
    def documents_root(self) -> str:
        return f"{self.database_path}/documents"

    def _document_name(self, collection: str, document_id: str) -> str:
        return f"{self.documents_root}/{collection.strip('/')}/{document_id}"

    def _get_access_token(self, *, force_refresh: bool = False) -> str:
        credentials = self._credentials
        if credentials is None:
            return self.access_token
        if credentials.valid and not force_refresh:
            return credentials.token

        with self._token_lock:
            if credentials.valid and not force_refresh:
                return credentials.token

            logger.debug("Refreshing document store credentials")
            try:
                credentials.refresh(AuthRequest())
            except GoogleAuthError as exc:
                logger.error("Failed to refresh document store credentials: %s", exc)
                raise StoreError("Failed to refresh document store credentials") from exc
            logger.info("Document store credentials refreshed; expire at %s", credentials.expiry)
            return credentials.token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Union[Dict[str, Any], List[Tuple[str, Any]]]] = None,
        json_payload: Optional[Dict[str, Any]] = None,
        expected_status: Union[int, Tuple[int, ...]] = (200,),
    ) -> Response:
        if isinstance(expected_status, int):
            expected_status = (expected_status,)

        url = f"{self.base_url}/{path.lstrip('/')}"
        response = self._send(method, url, params, json_payload, self._get_access_token())
        if response.status_code == 401 and self._credentials is not None:
            logger.warning("Document store rejected the access token; refreshing and retrying once")
            response = self._send(method, url, params, json_payload, self._get_access_token(force_refresh=True))

        if response.status_code == 404 and 404 not in expected_status:
            raise DocumentNotFoundError(f"Document store returned 404 for {path}")
        if response.status_code not in expected_status:
            self._log_error_response(response)
            raise StoreError(
                f"Document store responded with unexpected status {response.status_code}: {response.text[:512]}"
            )
        return response

    def _send(self, method: str, url: str, params, json_payload, token: str) -> Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        try:
            return self._session.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json_payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Request to document store failed: %s", exc)
            raise StoreError(f"Document store request failed: {exc}") from exc

    @staticmethod
    def _log_error_response(response: Response) -> None:
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                parsed = response.json()
                logger.error("Document store error response: status=%s body=%s", response.status_code, parsed)
                return
            except ValueError:
                pass
        logger.error(
            "Document store error response: status=%s body=%s", response.status_code, response.text[:2048]
        )

    @staticmethod
    def _json(response: Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError("Document store response was not valid JSON") from exc

    def _to_document(self, payload: Mapping[str, Any], collection: str) -> Document:
        name = str(payload.get("name", ""))
        return Document(
            id=name.rsplit("/", 1)[-1],
            collection=collection.strip("/"),
            data=decode_fields(payload.get("fields", {})),
        )

    @staticmethod
    def _field_filter(filter_: Filter) -> Dict[str, Any]:
        field_name, operator, value = filter_
        try:
            op = _OPERATORS[operator]
        except KeyError as exc:
            raise ValueError(f"Unsupported filter operator '{operator}'") from exc
        return {
            "fieldFilter": {
                "field": {"fieldPath": field_name},
                "op": op,
                "value": encode_value(value),
            }
        }

    def list_documents(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """List documents, using a structured query when filters or ordering are given."""

        if filters or order_by or limit is not None:
            return self._run_query(
                collection, filters or (), order_by=order_by, descending=descending, limit=limit
            )

        documents: List[Document] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"pageSize": self.page_size}
            if page_token:
                params["pageToken"] = page_token
            response = self._request(
                "GET", f"{self.documents_root}/{collection.strip('/')}", params=params
            )
            payload = self._json(response)
            for item in payload.get("documents", []):
                documents.append(self._to_document(item, collection))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return documents

    def _run_query(
        self,
        collection: str,
        filters: Sequence[Filter],
        *,
        order_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Document]:
        parent, collection_id = _split_collection(collection)
        query: Dict[str, Any] = {"from": [{"collectionId": collection_id}]}
        if len(filters) == 1:
            query["where"] = self._field_filter(filters[0])
        elif filters:
            query["where"] = {
                "compositeFilter": {
                    "op": "AND",
                    "filters": [self._field_filter(item) for item in filters],
                }
            }
        if order_by:
            query["orderBy"] = [
                {
                    "field": {"fieldPath": order_by},
                    "direction": "DESCENDING" if descending else "ASCENDING",
                }
            ]
        if limit is not None:
            query["limit"] = limit

        parent_path = f"{self.documents_root}/{parent}" if parent else self.documents_root
        response = self._request(
            "POST", f"{parent_path}:runQuery", json_payload={"structuredQuery": query}
        )
        rows = self._json(response)
        if not isinstance(rows, list):
            raise StoreError("Structured query response must be a list")
        return [self._to_document(row["document"], collection) for row in rows if "document" in row]

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        if not document_id:
            raise ValueError("document_id must be provided")
        response = self._request(
            "GET", self._document_name(collection, document_id), expected_status=(200, 404)
        )
        if response.status_code == 404:
            return None
        return self._to_document(self._json(response), collection)

    def create_document(self, collection: str, data: Mapping[str, Any]) -> str:
        response = self._request(
            "POST",
            f"{self.documents_root}/{collection.strip('/')}",
            json_payload={"fields": encode_fields(data)},
            expected_status=(200, 201),
        )
        return self._to_document(self._json(response), collection).id

    def update_document(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        if not document_id:
            raise ValueError("document_id must be provided")
        params: List[Tuple[str, Any]] = [("updateMask.fieldPaths", key) for key in fields]
        params.append(("currentDocument.exists", "true"))
        self._request(
            "PATCH",
            self._document_name(collection, document_id),
            params=params,
            json_payload={"fields": encode_fields(fields)},
        )

    def delete_document(self, collection: str, document_id: str) -> None:
        if not document_id:
            raise ValueError("document_id must be provided")
        self._request("DELETE", self._document_name(collection, document_id))

    def batch_update(self, collection: str, updates: Mapping[str, Mapping[str, Any]]) -> None:
        """Commit every update in a single atomic write."""

        if not updates:
            return
        writes = [
            {
                "update": {
                    "name": self._document_name(collection, document_id),
                    "fields": encode_fields(fields),
                },
                "updateMask": {"fieldPaths": list(fields)},
                "currentDocument": {"exists": True},
            }
            for document_id, fields in updates.items()
        ]
        self._request("POST", f"{self.documents_root}:commit", json_payload={"writes": writes})
