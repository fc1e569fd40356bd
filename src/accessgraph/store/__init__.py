"""Storage backends for the access-control tables.

- ``Store``: the logical contract (CRUD, transactions, reachability).
- ``MemoryStore``: process-local, copy-on-write transactions.
- ``SqlStore``: SQLAlchemy Core with recursive CTE reachability.
"""

from __future__ import annotations

from ..config import AccessControlConfig
from .base import Store, atomic
from .memory import MemoryStore
from .sql import SqlStore


def create_store(config: AccessControlConfig | None = None) -> Store:
    """Build the store selected by ``config.database_url``.

    No URL selects a ``MemoryStore``; otherwise a ``SqlStore`` with its
    schema created.
    """
    if config is None or config.database_url is None:
        return MemoryStore()
    store = SqlStore.from_url(config.database_url)
    store.create_schema()
    return store


__all__ = ["MemoryStore", "SqlStore", "Store", "atomic", "create_store"]
