"""Storage layer for founder_memory."""

from founder_memory.storage.chromadb import ChromaStore, StorageError
from founder_memory.storage.hybrid import HybridStore, HybridStoreError
from founder_memory.storage.sqlite import SQLiteStore, SQLiteStoreError

__all__ = [
    "ChromaStore",
    "StorageError",
    "HybridStore",
    "HybridStoreError",
    "SQLiteStore",
    "SQLiteStoreError",
]
