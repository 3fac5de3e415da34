from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Iterable

import httpx
import jwt

from settlement.core.config import Settings, get_settings
from settlement.core.errors import DocumentStoreError
from settlement.ledger.credentials import CredentialCache
from settlement.ledger.store import Filter, new_document_id, set_path

logger = logging.getLogger(__name__)

DATASTORE_SCOPE = "https://www.googleapis.com/auth/datastore"
_SIMPLE_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat().replace("+00:00", "Z")}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"unsupported document value type: {type(value).__name__}")


def encode_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {str(key): encode_value(val) for key, val in data.items() if key != "id"}


def decode_value(raw: dict[str, Any]) -> Any:
    if "nullValue" in raw:
        return None
    if "booleanValue" in raw:
        return bool(raw["booleanValue"])
    if "integerValue" in raw:
        return int(raw["integerValue"])
    if "doubleValue" in raw:
        return float(raw["doubleValue"])
    if "timestampValue" in raw:
        return raw["timestampValue"]
    if "stringValue" in raw:
        return raw["stringValue"]
    if "referenceValue" in raw:
        return raw["referenceValue"]
    if "arrayValue" in raw:
        return [decode_value(item) for item in raw["arrayValue"].get("values", [])]
    if "mapValue" in raw:
        return decode_fields(raw["mapValue"].get("fields", {}))
    return None


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: decode_value(val) for key, val in fields.items()}


def quote_field_path(path: str) -> str:
    segments = []
    for segment in path.split("."):
        if _SIMPLE_SEGMENT.match(segment):
            segments.append(segment)
        else:
            escaped = segment.replace("\\", "\\\\").replace("`", "\\`")
            segments.append(f"`{escaped}`")
    return ".".join(segments)


def service_account_fetcher(settings: Settings, transport: httpx.BaseTransport | None = None):
    """Token fetcher for a service account using the JWT bearer grant."""

    def fetch() -> tuple[str, int]:
        if not settings.firestore_client_email or not settings.firestore_private_key:
            raise DocumentStoreError("firestore service account credentials are not configured")
        now = int(time.time())
        assertion = jwt.encode(
            {
                "iss": settings.firestore_client_email,
                "scope": DATASTORE_SCOPE,
                "aud": settings.firestore_token_uri,
                "iat": now,
                "exp": now + 3600,
            },
            settings.firestore_private_key.replace("\\n", "\n"),
            algorithm="RS256",
        )
        try:
            with httpx.Client(timeout=settings.http_timeout_seconds, transport=transport) as client:
                response = client.post(
                    settings.firestore_token_uri,
                    data={
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": assertion,
                    },
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DocumentStoreError(f"service account token exchange failed: {exc}") from exc
        body = response.json()
        return str(body["access_token"]), int(body.get("expires_in", 3600))

    return fetch


class FirestoreDocumentStore:
    backend = "firestore"

    def __init__(
        self,
        settings: Settings | None = None,
        credentials: CredentialCache | None = None,
        transport: httpx.BaseTransport | None = None,
        id_token: str | None = None,
    ):
        self.settings = settings or get_settings()
        if not self.settings.firestore_project_id:
            raise DocumentStoreError("SETTLE_FIRESTORE_PROJECT_ID is required for the firestore backend")
        self.transport = transport
        self.credentials = credentials or CredentialCache(
            service_account_fetcher(self.settings, transport=transport),
            skew_seconds=self.settings.firestore_token_skew_seconds,
        )
        self.id_token = id_token
        self.database_path = (
            f"projects/{self.settings.firestore_project_id}/databases/{self.settings.firestore_database}"
        )
        self.base_url = f"{self.settings.firestore_base_url.rstrip('/')}/{self.database_path}/documents"

    def bind_identity(self, id_token: str | None) -> "FirestoreDocumentStore":
        if not id_token:
            return self
        return FirestoreDocumentStore(
            settings=self.settings,
            credentials=self.credentials,
            transport=self.transport,
            id_token=id_token,
        )

    def _headers(self) -> dict[str, str]:
        token = self.id_token or self.credentials.get()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        json_body: Any = None,
        allow_missing: bool = False,
    ) -> Any:
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(), params=params, json=json_body)
        except httpx.HTTPError as exc:
            raise DocumentStoreError(f"firestore {method} {url} failed: {exc}") from exc

        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code == 401 and self.id_token is None:
            self.credentials.invalidate()
        if response.status_code >= 400:
            raise DocumentStoreError(
                f"firestore {method} {url} returned {response.status_code}: {response.text[:300]}"
            )
        if not response.content:
            return {}
        return response.json()

    def _doc_url(self, collection: str, doc_id: str) -> str:
        return f"{self.base_url}/{collection}/{doc_id}"

    @staticmethod
    def _present(document: dict[str, Any]) -> dict[str, Any]:
        doc = decode_fields(document.get("fields", {}))
        doc["id"] = document["name"].rsplit("/", 1)[-1]
        return doc

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        document = self._request("GET", self._doc_url(collection, doc_id), allow_missing=True)
        if document is None:
            return None
        return self._present(document)

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        params = None
        if merge:
            params = [("updateMask.fieldPaths", quote_field_path(key)) for key in data if key != "id"]
        self._request(
            "PATCH",
            self._doc_url(collection, doc_id),
            params=params,
            json_body={"fields": encode_fields(data)},
        )

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> None:
        nested: dict[str, Any] = {}
        for path, value in changes.items():
            set_path(nested, path, value)
        params = [("updateMask.fieldPaths", quote_field_path(path)) for path in changes]
        params.append(("currentDocument.exists", "true"))
        self._request(
            "PATCH",
            self._doc_url(collection, doc_id),
            params=params,
            json_body={"fields": encode_fields(nested)},
        )

    def delete(self, collection: str, doc_id: str) -> None:
        self._request("DELETE", self._doc_url(collection, doc_id), allow_missing=True)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        self._request(
            "POST",
            f"{self.base_url}/{collection}",
            params={"documentId": doc_id},
            json_body={"fields": encode_fields(data)},
        )
        return doc_id

    def increment(self, collection: str, doc_id: str, deltas: dict[str, float]) -> None:
        write = {
            "transform": {
                "document": f"{self.database_path}/documents/{collection}/{doc_id}",
                "fieldTransforms": [
                    {"fieldPath": quote_field_path(path), "increment": encode_value(delta)}
                    for path, delta in deltas.items()
                ],
            },
            "currentDocument": {"exists": True},
        }
        self._request("POST", f"{self.base_url}:commit", json_body={"writes": [write]})

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        field_filters = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": quote_field_path(flt.field)},
                    "op": flt.op,
                    "value": encode_value(list(flt.value) if flt.op == "IN" else flt.value),
                }
            }
            for flt in filters
        ]
        structured: dict[str, Any] = {"from": [{"collectionId": collection}]}
        if len(field_filters) == 1:
            structured["where"] = field_filters[0]
        elif field_filters:
            structured["where"] = {"compositeFilter": {"op": "AND", "filters": field_filters}}
        if order_by:
            structured["orderBy"] = [
                {
                    "field": {"fieldPath": quote_field_path(order_by)},
                    "direction": "DESCENDING" if descending else "ASCENDING",
                }
            ]
        if limit is not None:
            structured["limit"] = limit

        rows = self._request("POST", f"{self.base_url}:runQuery", json_body={"structuredQuery": structured})
        return [self._present(row["document"]) for row in rows or [] if row.get("document")]
