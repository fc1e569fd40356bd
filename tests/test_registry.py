"""Tests for permission and role registries and requirements."""

from __future__ import annotations

import pytest

from accessgraph import (
    AccessControlConfig,
    MemoryStore,
    MissingPermissionDeclaration,
    NotFoundError,
    PermissionRegistry,
    PermissionRequirements,
    RoleRegistry,
)
from accessgraph.registry import BUILTIN_PERMISSIONS


class TestPermissionRegistry:
    """Tests for PermissionRegistry."""

    def test_builtins_registered(self) -> None:
        """Test that engine permissions exist from the start."""
        registry = PermissionRegistry()
        for name in BUILTIN_PERMISSIONS:
            assert name in registry

    def test_register_idempotent(self) -> None:
        """Test that registering twice keeps one entry."""
        registry = PermissionRegistry()
        registry.register("view")
        registry.register("view")
        assert len([n for n in registry.all() if n == "view"]) == 1

    def test_metadata_overwrite(self) -> None:
        """Test that new metadata replaces old, and no metadata keeps it."""
        registry = PermissionRegistry()
        registry.register("view", protects="doc")
        registry.register("view")
        assert registry.metadata("view") == {"protects": "doc"}
        registry.register("view", protects="folder")
        assert registry.metadata("view") == {"protects": "folder"}

    def test_register_iterables(self) -> None:
        """Test that names may be passed as lists."""
        registry = PermissionRegistry()
        registry.register(["a", "b"], "c")
        assert {"a", "b", "c"} <= registry.all()

    def test_get_unknown(self) -> None:
        """Test that unknown names raise NotFoundError."""
        with pytest.raises(NotFoundError):
            PermissionRegistry().get("nope")

    def test_query(self) -> None:
        """Test metadata queries by value and membership."""
        registry = PermissionRegistry()
        registry.register("view", protects=frozenset({"doc#show", "doc#list"}))
        registry.register("edit", protects="doc#update")
        assert registry.query(protects="doc#show") == {"view"}
        assert registry.query(protects="doc#update") == {"edit"}
        assert registry.query(protects="other") == frozenset()

    def test_resolve_lenient(self, caplog) -> None:
        """Test that lenient resolution drops and logs unknown names."""
        registry = PermissionRegistry()
        registry.register("view")
        caplog.set_level("INFO", logger="accessgraph.audit")
        assert registry.resolve(["view", "ghost"], strict=False) == {"view"}
        assert "ghost" in caplog.text
        with pytest.raises(NotFoundError):
            registry.resolve(["ghost"])


class TestRoleRegistry:
    """Tests for RoleRegistry (backend independent)."""

    @pytest.fixture
    def roles(self, store) -> RoleRegistry:
        permissions = PermissionRegistry()
        permissions.register("view", "edit", "delete")
        return RoleRegistry(store, permissions)

    def test_define_and_lookup(self, roles: RoleRegistry) -> None:
        """Test defining a role and reading it back."""
        role = roles.define("editor", ["view", "edit"])
        assert roles.get("editor") == role
        assert roles.by_id(role.id) == role
        assert role.permissions == {"view", "edit"}
        assert role.local and not role.global_

    def test_define_unknown_permission(self, roles: RoleRegistry) -> None:
        """Test that a role cannot reference unregistered permissions."""
        with pytest.raises(NotFoundError):
            roles.define("bad", ["fly"])

    def test_redefine(self, roles: RoleRegistry) -> None:
        """Test that defining again replaces permissions and flags."""
        first = roles.define("editor", ["view"])
        second = roles.define("editor", ["edit"], local=False, global_=True)
        assert first.id == second.id
        assert roles.get("editor").permissions == {"edit"}
        assert roles.get("editor").global_

    def test_add_remove_permissions(self, roles: RoleRegistry) -> None:
        """Test changing a role's permission set in place."""
        roles.define("editor", ["view"])
        assert roles.add_permissions("editor", ["view", "edit"]) == {"edit"}
        assert roles.get("editor").permissions == {"view", "edit"}
        assert roles.remove_permissions("editor", ["edit", "delete"]) == {"edit"}
        assert roles.get("editor").permissions == {"view"}

    def test_remove(self, roles: RoleRegistry) -> None:
        """Test deleting a role."""
        roles.define("editor", ["view"])
        roles.remove("editor")
        assert roles.find("editor") is None
        with pytest.raises(NotFoundError):
            roles.get("editor")

    def test_with_names_skips_unknown(self, roles: RoleRegistry) -> None:
        """Test bulk lookup ignores unknown names."""
        roles.define("a", ["view"])
        roles.define("b", ["edit"])
        assert [r.name for r in roles.with_names(["b", "ghost", "a"])] == ["b", "a"]

    def test_roles_for_all_permissions(self, roles: RoleRegistry) -> None:
        """Test the superset query."""
        roles.define("reader", ["view"])
        roles.define("editor", ["view", "edit"])
        roles.define("janitor", ["delete"])
        names = lambda perms: {r.name for r in roles.roles_for_all_permissions(perms)}
        assert names({"view"}) == {"reader", "editor"}
        assert names({"view", "edit"}) == {"editor"}
        assert names({"view", "delete"}) == set()

    def test_persisted(self, store, roles: RoleRegistry) -> None:
        """Test that a fresh registry sees stored roles."""
        roles.define("editor", ["view", "edit"])
        again = RoleRegistry(store, PermissionRegistry())
        assert again.get("editor").permissions == {"view", "edit"}

    def test_rolled_back_define_not_served(self, store, roles: RoleRegistry) -> None:
        """Test that a role defined in a rolled-back unit disappears."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                roles.define("ghost", ["view"])
                assert roles.get("ghost").permissions == {"view"}
                raise RuntimeError("abort")
        assert store.roles() == []
        assert roles.find("ghost") is None
        assert roles.roles_for_all_permissions({"view"}) == frozenset()

    def test_rolled_back_redefine_keeps_old_permissions(self, store, roles: RoleRegistry) -> None:
        """Test that a rolled-back redefinition leaves the committed role."""
        roles.define("editor", ["view"])
        with pytest.raises(RuntimeError):
            with store.transaction():
                roles.add_permissions("editor", ["edit"])
                assert roles.get("editor").permissions == {"view", "edit"}
                raise RuntimeError("abort")
        assert roles.get("editor").permissions == {"view"}


class TestPermissionRequirements:
    """Tests for PermissionRequirements."""

    def test_declared(self) -> None:
        """Test that declarations accumulate and tag metadata."""
        permissions = PermissionRegistry()
        requirements = PermissionRequirements(permissions)
        requirements.declare("doc", "update", ["edit"])
        requirements.declare("doc", "update", ["view"])
        assert requirements.required("doc", "update") == {"edit", "view"}
        assert "doc#update" in permissions.metadata("edit")["protects"]

    def test_read_defaults(self) -> None:
        """Test that reads fall back to the configured defaults."""
        config = AccessControlConfig(default_query_permissions=["list"], default_view_permissions=["see"])
        requirements = PermissionRequirements(PermissionRegistry(), config)
        assert requirements.required("doc", "list") == {"list"}
        assert requirements.required("doc", "show") == {"see"}

    def test_missing_declaration(self) -> None:
        """Test that undeclared writes raise unless a default is given."""
        requirements = PermissionRequirements(PermissionRegistry())
        with pytest.raises(MissingPermissionDeclaration):
            requirements.required("doc", "update")
        assert requirements.required("doc", "update", default=()) == frozenset()
