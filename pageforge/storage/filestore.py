from __future__ import annotations

import base64
import hashlib
import json
import logging
from typing import Any, Optional

import httpx

from pageforge.config import settings
from pageforge.errors import CollaboratorError, DuplicateKeyError, PreconditionFailed, StoreConfigError
from pageforge.storage.base import UNIQUE_FIELDS, RecordStore, StoredRecord

logger = logging.getLogger(__name__)


def record_version(record: dict[str, Any]) -> str:
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class FileStore(RecordStore):
    """
    Stores each collection as one JSON document (`<data_dir>/<collection>.json`, an
    object keyed by record id) in a GitHub repository via the contents API.

    Writes are read-modify-write of the whole blob. The blob sha guards the PUT; a
    blob conflict (someone changed another record) is retried with a fresh read,
    re-checking the record-level precondition each time. A record whose own
    content hash no longer matches the caller's precondition is never overwritten.
    """

    backend_name = "filestore"

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        branch: Optional[str] = None,
        base_url: Optional[str] = None,
        data_dir: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        write_attempts: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.token = (token or settings.GITHUB_TOKEN or "").strip()
        self.owner = (owner or settings.GITHUB_OWNER or "").strip()
        self.repo = (repo or settings.GITHUB_REPO or "").strip()
        if not (self.token and self.owner and self.repo):
            raise StoreConfigError("GITHUB_TOKEN, GITHUB_OWNER and GITHUB_REPO are required for the file store")
        self.branch = branch or settings.GITHUB_BRANCH
        self.base_url = (base_url or settings.FILESTORE_API_BASE_URL).rstrip("/")
        self.data_dir = (data_dir or settings.FILESTORE_DATA_DIR).strip("/")
        self.timeout_seconds = float(timeout_seconds or settings.FILESTORE_TIMEOUT_SECONDS)
        self.write_attempts = int(write_attempts or settings.FILESTORE_WRITE_ATTEMPTS)
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"token {self.token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )

    def _contents_url(self, collection: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{self.data_dir}/{collection}.json"

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise CollaboratorError(f"File store request timed out: {exc}", service="filestore", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"File store request failed: {exc}", service="filestore", retryable=True) from exc

    def _read_raw(self, collection: str, params: Optional[dict[str, str]], size: int) -> str:
        resp = self._request(
            "GET",
            self._contents_url(collection),
            params=params,
            headers={"Accept": "application/vnd.github.raw"},
        )
        if resp.status_code >= 400:
            raise CollaboratorError(
                f"File store raw read failed for {collection}", service="filestore", status_code=resp.status_code
            )
        if size > 0 and not resp.content:
            raise CollaboratorError(f"File store returned no content for {collection}", service="filestore")
        return resp.content.decode("utf-8")

    def _read_blob(self, collection: str) -> tuple[dict[str, dict[str, Any]], Optional[str]]:
        params = {"ref": self.branch} if self.branch else None
        resp = self._request("GET", self._contents_url(collection), params=params)
        if resp.status_code == 404:
            return {}, None
        if resp.status_code >= 400:
            raise CollaboratorError(
                f"File store read failed for {collection}", service="filestore", status_code=resp.status_code
            )
        body = resp.json()
        size = int(body.get("size") or 0)
        content = body.get("content") or ""
        if body.get("encoding") == "none" or (not content and size > 0):
            # Files over 1 MB come back without inline content.
            raw = self._read_raw(collection, params, size)
        else:
            raw = base64.b64decode(content).decode("utf-8")
        try:
            data = json.loads(raw) if raw.strip() else {}
        except ValueError as exc:
            raise CollaboratorError(f"File store blob for {collection} is not valid JSON", service="filestore") from exc
        if isinstance(data, list):
            # Older files hold a plain list of records.
            data = {str(item["id"]): item for item in data if isinstance(item, dict) and item.get("id")}
        if not isinstance(data, dict):
            raise CollaboratorError(f"File store blob for {collection} is not a JSON object", service="filestore")
        return data, body.get("sha")

    def _write_blob(
        self, collection: str, records: dict[str, dict[str, Any]], sha: Optional[str], message: str
    ) -> bool:
        encoded = json.dumps(records, indent=2, sort_keys=True, default=str).encode("utf-8")
        payload: dict[str, Any] = {"message": message, "content": base64.b64encode(encoded).decode("ascii")}
        if sha:
            payload["sha"] = sha
        if self.branch:
            payload["branch"] = self.branch
        resp = self._request("PUT", self._contents_url(collection), json=payload)
        if resp.status_code in (409, 422):
            return False
        if resp.status_code >= 400:
            raise CollaboratorError(
                f"File store write failed for {collection}", service="filestore", status_code=resp.status_code
            )
        return True

    def _check_unique(self, collection: str, records: dict[str, dict[str, Any]], record_id: str, record: dict[str, Any]) -> None:
        for field in UNIQUE_FIELDS.get(collection, ()):
            value = record.get(field)
            if value is None:
                continue
            for other_id, other in records.items():
                if other_id != record_id and other.get(field) == value:
                    raise DuplicateKeyError(collection, field, str(value))

    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        records, _ = self._read_blob(collection)
        record = records.get(record_id)
        if record is None:
            return None
        return StoredRecord(id=record_id, data=record, version=record_version(record))

    def find(self, collection: str, field: str, value: Any) -> Optional[StoredRecord]:
        records, _ = self._read_blob(collection)
        for record_id, record in records.items():
            if record.get(field) == value:
                return StoredRecord(id=record_id, data=record, version=record_version(record))
        return None

    def list_records(self, collection: str) -> list[StoredRecord]:
        records, _ = self._read_blob(collection)
        items = [
            StoredRecord(id=record_id, data=record, version=record_version(record))
            for record_id, record in records.items()
        ]
        items.sort(key=lambda item: str(item.data.get("created_at") or ""), reverse=True)
        return items

    def insert(self, collection: str, record_id: str, record: dict[str, Any]) -> StoredRecord:
        new_record = {**record, "id": record_id}
        for _ in range(self.write_attempts):
            records, sha = self._read_blob(collection)
            if record_id in records:
                raise DuplicateKeyError(collection, "id", record_id)
            self._check_unique(collection, records, record_id, new_record)
            records[record_id] = new_record
            if self._write_blob(collection, records, sha, f"Create {collection} {record_id}"):
                return StoredRecord(id=record_id, data=new_record, version=record_version(new_record))
            logger.info("filestore.blob_conflict_retry", extra={"collection": collection, "record_id": record_id})
        raise PreconditionFailed(collection, record_id)

    def put(
        self,
        collection: str,
        record_id: str,
        record: dict[str, Any],
        precondition: Optional[str] = None,
    ) -> StoredRecord:
        new_record = {**record, "id": record_id}
        for _ in range(self.write_attempts):
            records, sha = self._read_blob(collection)
            current = records.get(record_id)
            if precondition is not None:
                actual = record_version(current) if current is not None else None
                if actual != precondition:
                    raise PreconditionFailed(collection, record_id, expected=precondition, actual=actual)
            self._check_unique(collection, records, record_id, new_record)
            records[record_id] = new_record
            if self._write_blob(collection, records, sha, f"Update {collection} {record_id}"):
                return StoredRecord(id=record_id, data=new_record, version=record_version(new_record))
            logger.info("filestore.blob_conflict_retry", extra={"collection": collection, "record_id": record_id})
        raise PreconditionFailed(collection, record_id, expected=precondition)
