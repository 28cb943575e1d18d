from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from pageforge.errors import DuplicateKeyError, NotFoundError, PreconditionFailed

logger = logging.getLogger(__name__)

# Fields that must be unique across a collection, enforced by every backend.
UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {
    "documents": ("slug",),
}


@dataclass(frozen=True)
class StoredRecord:
    id: str
    data: dict[str, Any]
    version: str


def append_at_path(data: dict[str, Any], path: str, item: Any) -> None:
    keys = [key for key in path.split(".") if key]
    if not keys:
        raise ValueError("append path must not be empty")
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    target = node.get(keys[-1])
    if target is None:
        target = []
        node[keys[-1]] = target
    if not isinstance(target, list):
        raise ValueError(f"Cannot append to non-list field '{path}'")
    target.append(item)


class RecordStore(ABC):
    """
    Collection/id keyed record storage.

    Every record comes back with an opaque version tag. Passing that tag as the
    `precondition` of `put` makes the write fail with PreconditionFailed when the
    record changed in between, so callers can re-read and retry instead of
    silently overwriting a concurrent writer.
    """

    backend_name = "abstract"

    @abstractmethod
    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        ...

    @abstractmethod
    def put(
        self,
        collection: str,
        record_id: str,
        record: dict[str, Any],
        precondition: Optional[str] = None,
    ) -> StoredRecord:
        ...

    @abstractmethod
    def insert(self, collection: str, record_id: str, record: dict[str, Any]) -> StoredRecord:
        """Create a record; raises DuplicateKeyError when the id (or a unique field) is taken."""

    @abstractmethod
    def find(self, collection: str, field: str, value: Any) -> Optional[StoredRecord]:
        ...

    @abstractmethod
    def list_records(self, collection: str) -> list[StoredRecord]:
        ...

    def append(self, collection: str, record_id: str, path: str, item: Any, *, attempts: int = 5) -> StoredRecord:
        for _ in range(max(1, attempts)):
            current = self.get(collection, record_id)
            if current is None:
                data: dict[str, Any] = {"id": record_id}
                append_at_path(data, path, item)
                try:
                    return self.insert(collection, record_id, data)
                except DuplicateKeyError:
                    continue
            data = copy.deepcopy(current.data)
            append_at_path(data, path, item)
            try:
                return self.put(collection, record_id, data, precondition=current.version)
            except PreconditionFailed:
                logger.info(
                    "store.append_retry",
                    extra={"collection": collection, "record_id": record_id, "path": path},
                )
        raise PreconditionFailed(collection, record_id)

    def update(
        self,
        collection: str,
        record_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
        *,
        attempts: int = 3,
    ) -> StoredRecord:
        """Read-modify-write with the version guard, re-reading on conflict."""

        last_conflict: Optional[PreconditionFailed] = None
        for _ in range(max(1, attempts)):
            current = self.get(collection, record_id)
            if current is None:
                raise NotFoundError(collection, record_id)
            data = mutate(copy.deepcopy(current.data))
            try:
                return self.put(collection, record_id, data, precondition=current.version)
            except PreconditionFailed as exc:
                last_conflict = exc
                logger.info("store.update_retry", extra={"collection": collection, "record_id": record_id})
        if last_conflict is not None:
            raise last_conflict
        raise PreconditionFailed(collection, record_id)
