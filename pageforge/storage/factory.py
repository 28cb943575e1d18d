from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from pageforge.config import settings
from pageforge.db.base import SessionLocal, engine
from pageforge.errors import StoreConfigError
from pageforge.storage.base import RecordStore
from pageforge.storage.filestore import FileStore
from pageforge.storage.relational import RelationalStore

logger = logging.getLogger(__name__)


def _database_reachable() -> bool:
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.warning("store.database_unreachable", extra={"error": str(exc)})
        return False


def select_store() -> RecordStore:
    """Check the database once; fall back to the GitHub-backed file store."""

    if _database_reachable():
        logger.info("store.selected", extra={"backend": RelationalStore.backend_name})
        return RelationalStore(SessionLocal)
    if settings.filestore_configured:
        logger.info("store.selected", extra={"backend": FileStore.backend_name})
        return FileStore()
    raise StoreConfigError(
        "No persistence backend available: DATABASE_URL is unset or unreachable "
        "and GITHUB_TOKEN/GITHUB_OWNER/GITHUB_REPO are not configured."
    )


@lru_cache(maxsize=1)
def _select_once() -> tuple[Optional[RecordStore], Optional[str]]:
    # A failed selection is cached too; the process never re-checks.
    try:
        return select_store(), None
    except StoreConfigError as exc:
        return None, str(exc)


def get_store() -> RecordStore:
    store, error = _select_once()
    if store is None:
        raise StoreConfigError(error or "No persistence backend available")
    return store
