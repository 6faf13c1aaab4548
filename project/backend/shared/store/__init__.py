"""
Ledger store backends.
"""

from shared.config import Settings
from shared.store.base import Store, StoreSession
from shared.store.memory import MemoryStore


def create_store(settings: Settings) -> Store:
    """Build the store selected by STORE_BACKEND."""
    if settings.store_backend == "postgres":
        from shared.store.postgres import PostgresStore

        return PostgresStore(
            settings.require_database(),
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
        )
    return MemoryStore()


__all__ = ["Store", "StoreSession", "MemoryStore", "create_store"]
