"""Durable store adapters for consent requests.

All adapters implement the ConsentStore protocol defined in base.py.

Available Adapters:
    - MemoryConsentStore: In-memory storage with asyncio concurrency control
    - FileConsentStore: One JSON document per request on local disk
"""

from consent_lifecycle.storage.base import MUTABLE_FIELDS, ConsentStore
from consent_lifecycle.storage.file import FileConsentStore
from consent_lifecycle.storage.memory import MemoryConsentStore

__all__ = [
    "MUTABLE_FIELDS",
    "ConsentStore",
    "FileConsentStore",
    "MemoryConsentStore",
    "create_store",
]


def create_store(adapter: str, file_storage_path: str | None = None) -> ConsentStore:
    """Build the store named by ``ConsentConfig.storage_adapter``."""
    if adapter == "memory":
        return MemoryConsentStore()
    if adapter == "file":
        if not file_storage_path:
            raise ValueError("file_storage_path is required for the file store")
        return FileConsentStore(file_storage_path)
    raise ValueError(f"Unknown storage adapter: {adapter}")
