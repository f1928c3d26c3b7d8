"""
Persistence for Tally data.

This module contains:
- The Store protocol with PostgreSQL and in-memory implementations
- Master resolution (auto-creating referenced masters)
- The idempotent upsert engine
"""

from .base import PostgresStore, Store, StoreError
from .masters import MasterResolver, MasterResult
from .memory import MemoryStore
from .transactions import SIGNIFICANT_FIELDS, UpsertEngine

__all__ = [
    "Store",
    "StoreError",
    "PostgresStore",
    "MemoryStore",
    "MasterResolver",
    "MasterResult",
    "UpsertEngine",
    "SIGNIFICANT_FIELDS",
]
