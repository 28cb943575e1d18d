from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from pageforge.db.base import Base
from pageforge.db.models import COLLECTION_MODELS
from pageforge.errors import DuplicateKeyError, NotFoundError, PreconditionFailed
from pageforge.storage.base import UNIQUE_FIELDS, RecordStore, StoredRecord

logger = logging.getLogger(__name__)

EXTRA_COLUMN = "extra"


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _format_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


class RelationalStore(RecordStore):
    """
    One table per collection. The integer `version` column is the optimistic
    concurrency token: guarded writes run `UPDATE ... WHERE id = :id AND version = :expected`.
    """

    backend_name = "relational"

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _model(self, collection: str) -> type[Base]:
        model = COLLECTION_MODELS.get(collection)
        if model is None:
            raise KeyError(f"Unknown collection: {collection}")
        return model

    def _to_record(self, row: Any) -> StoredRecord:
        data: dict[str, Any] = {}
        for column in row.__table__.columns:
            if column.key in ("version", EXTRA_COLUMN):
                continue
            data[column.key] = _format_datetime(getattr(row, column.key))
        for key, value in (getattr(row, EXTRA_COLUMN, None) or {}).items():
            data.setdefault(key, value)
        return StoredRecord(id=str(row.id), data=data, version=str(row.version))

    def _to_columns(self, model: type[Base], record: dict[str, Any]) -> dict[str, Any]:
        columns = model.__table__.columns
        values: dict[str, Any] = {}
        for column in columns:
            if column.key in ("id", "version", EXTRA_COLUMN) or column.key not in record:
                continue
            value = record[column.key]
            if isinstance(column.type, DateTime):
                value = _parse_datetime(value)
            values[column.key] = value
        # Keys without a column of their own ride along in the extra JSON column.
        values[EXTRA_COLUMN] = {
            key: value
            for key, value in record.items()
            if key not in columns and key not in ("id", "version", EXTRA_COLUMN)
        } or None
        return values

    def _duplicate_error(self, session: Session, collection: str, record_id: str, record: dict[str, Any]) -> DuplicateKeyError:
        model = self._model(collection)
        for field in UNIQUE_FIELDS.get(collection, ()):
            value = record.get(field)
            if value is None:
                continue
            existing = session.scalars(select(model).where(getattr(model, field) == value)).first()
            if existing is not None and str(existing.id) != record_id:
                return DuplicateKeyError(collection, field, str(value))
        return DuplicateKeyError(collection, "id", record_id)

    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        model = self._model(collection)
        with self._session_factory() as session:
            row = session.get(model, record_id)
            return self._to_record(row) if row is not None else None

    def find(self, collection: str, field: str, value: Any) -> Optional[StoredRecord]:
        model = self._model(collection)
        with self._session_factory() as session:
            row = session.scalars(select(model).where(getattr(model, field) == value)).first()
            return self._to_record(row) if row is not None else None

    def list_records(self, collection: str) -> list[StoredRecord]:
        model = self._model(collection)
        stmt = select(model)
        if "created_at" in model.__table__.columns:
            stmt = stmt.order_by(model.created_at.desc())
        with self._session_factory() as session:
            return [self._to_record(row) for row in session.scalars(stmt).all()]

    def insert(self, collection: str, record_id: str, record: dict[str, Any]) -> StoredRecord:
        model = self._model(collection)
        with self._session_factory() as session:
            row = model(id=record_id, version=1, **self._to_columns(model, record))
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise self._duplicate_error(session, collection, record_id, record)
            session.refresh(row)
            return self._to_record(row)

    def put(
        self,
        collection: str,
        record_id: str,
        record: dict[str, Any],
        precondition: Optional[str] = None,
    ) -> StoredRecord:
        model = self._model(collection)
        values = self._to_columns(model, record)
        with self._session_factory() as session:
            try:
                if precondition is not None:
                    try:
                        expected = int(precondition)
                    except ValueError:
                        raise PreconditionFailed(collection, record_id, expected=precondition)
                    stmt = (
                        update(model)
                        .where(model.id == record_id, model.version == expected)
                        .values(**values, version=model.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    result = session.execute(stmt)
                    if result.rowcount != 1:
                        session.rollback()
                        current = session.get(model, record_id)
                        raise PreconditionFailed(
                            collection,
                            record_id,
                            expected=precondition,
                            actual=str(current.version) if current is not None else None,
                        )
                    session.commit()
                else:
                    # Unguarded write: last writer wins.
                    row = session.get(model, record_id)
                    if row is None:
                        session.add(model(id=record_id, version=1, **values))
                    else:
                        for key, value in values.items():
                            setattr(row, key, value)
                        row.version = row.version + 1
                    session.commit()
            except IntegrityError:
                session.rollback()
                raise self._duplicate_error(session, collection, record_id, record)

            row = session.get(model, record_id, populate_existing=True)
            if row is None:
                raise NotFoundError(collection, record_id)
            return self._to_record(row)
