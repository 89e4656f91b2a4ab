"""Progress and status stores for batch runs."""
from store.base import BatchStore
from store.memory import MemoryStore
from store.sql import SqlStore

__all__ = [
    "BatchStore",
    "MemoryStore",
    "SqlStore",
]
