# storage/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT: STORAGE MODULE
# ============================================================================
# Transactional store interfaces with Postgres and in-memory implementations
# ============================================================================

from storefront.storage.base import IStore, IUnitOfWork
from storefront.storage.memory import InMemoryStore
from storefront.storage.postgres import PostgresStore

__all__ = [
    "IStore",
    "IUnitOfWork",
    "InMemoryStore",
    "PostgresStore",
]
