"""Shared fixtures: every store-backed test runs on both backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

import pytest

from accessgraph import AccessControlConfig, AccessManager, MemoryStore, SqlStore, Store
from accessgraph.securable import Securable


@dataclass(eq=False)
class Record(Securable):
    """Minimal application entity used by the tests."""

    kind: str
    key: str
    parents: list["Record"] = field(default_factory=list)
    persisted: bool = True

    @property
    def securable_type(self) -> str:
        return self.kind

    @property
    def securable_id(self) -> str:
        return self.key

    def declared_parents(self):
        return list(self.parents)

    def is_persisted(self) -> bool:
        return self.persisted


@pytest.fixture(params=["memory", "sqlite"])
def store(request) -> Iterator[Store]:
    if request.param == "memory":
        yield MemoryStore()
        return
    sql_store = SqlStore.from_url("sqlite://")
    sql_store.create_schema()
    yield sql_store
    sql_store.drop_schema()
    sql_store.engine.dispose()


@pytest.fixture
def config() -> AccessControlConfig:
    return AccessControlConfig()


@pytest.fixture
def manager(store: Store, config: AccessControlConfig) -> AccessManager:
    manager = AccessManager(store, config)
    manager.permissions.register("view", "query", "edit", "create", "destroy", "publish")
    manager.roles.define("owner", ["view", "query", "edit", "grant_roles", "change_inheritance_blocking"])
    manager.roles.define("editor", ["view", "query", "edit"])
    manager.roles.define("viewer", ["view", "query"])
    manager.roles.define("sharer", ["view", "share_own_roles"])
    manager.roles.define("admin", ["view", "query", "edit", "grant_roles"], local=False, global_=True)
    return manager


@pytest.fixture
def system(manager: AccessManager):
    """Trusted context for arranging fixtures."""
    return manager.context_for().trusted()
