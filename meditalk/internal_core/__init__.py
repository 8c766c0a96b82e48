from .config import AppConfig, load_config
from .record_store import InMemoryRecordStore, JsonFileRecordStore, RecordStoreError
from .session_store import InMemorySessionStore

__all__ = [
    "AppConfig",
    "load_config",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
    "RecordStoreError",
    "InMemorySessionStore",
]
