from pageforge.storage.base import RecordStore, StoredRecord
from pageforge.storage.factory import get_store, select_store
from pageforge.storage.filestore import FileStore
from pageforge.storage.relational import RelationalStore

__all__ = ["FileStore", "RecordStore", "RelationalStore", "StoredRecord", "get_store", "select_store"]
