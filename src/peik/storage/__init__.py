"""Storage adapters for Peik."""

from __future__ import annotations

from peik.config import StorageConfig
from peik.storage.base import StorageAdapter
from peik.storage.memory import MemoryStorage
from peik.storage.sqlite import SQLiteStorage


def create_storage(config: StorageConfig) -> MemoryStorage | SQLiteStorage:
    """Build the adapter selected by ``storage.backend``."""
    if config.backend == "memory":
        return MemoryStorage()
    if config.backend == "sqlite":
        return SQLiteStorage(config.db_path)
    raise ValueError(f"Unknown storage backend: {config.backend}")


__all__ = ["MemoryStorage", "SQLiteStorage", "StorageAdapter", "create_storage"]
