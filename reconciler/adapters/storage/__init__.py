"""Storage adapters for the reconciliation engine.

This module contains storage adapters that implement the StoragePort interface
for persisting canonical entities and maintaining the audit trail.
"""

from reconciler.adapters.storage.duckdb_adapter import DuckDBAdapter
from reconciler.adapters.storage.memory_adapter import MemoryStorageAdapter

__all__ = ["DuckDBAdapter", "MemoryStorageAdapter"]
