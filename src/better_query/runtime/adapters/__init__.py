"""
Storage adapters.

The abstract contract plus the bundled in-memory and SQLite drivers.
"""

from better_query.runtime.adapters.base import RelationalWritesMixin, StorageAdapter, generate_id
from better_query.runtime.adapters.memory import MemoryAdapter
from better_query.runtime.adapters.sqlite import SQLiteAdapter

__all__ = [
    "StorageAdapter",
    "RelationalWritesMixin",
    "MemoryAdapter",
    "SQLiteAdapter",
    "generate_id",
]
