"""Local durable cache implementations."""

from pycloudsync.storage.local import FileLocalCache, LocalCache, MemoryLocalCache

__all__ = ["FileLocalCache", "LocalCache", "MemoryLocalCache"]
