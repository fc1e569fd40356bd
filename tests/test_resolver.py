"""Tests for accessgraph.resolver and restriction predicates."""

from __future__ import annotations

import pytest
import sqlalchemy as sa

from accessgraph import (
    GLOBAL_NODE_ID,
    AccessManager,
    AuthContext,
    DenyAllRestriction,
    IdRestriction,
    NullRestriction,
    RestrictionStrategy,
    SqlStore,
    SubqueryRestriction,
    Unauthorized,
)


@pytest.fixture
def tree(manager: AccessManager, system: AuthContext):
    """folder -> (doc1, doc2), doc3 at top level, p1 editor on folder."""
    p1 = manager.principal_for("user", "p1")
    folder = manager.graph.create_node("folder", "f")
    doc1 = manager.graph.create_node("doc", "1", [folder])
    doc2 = manager.graph.create_node("doc", "2", [folder])
    doc3 = manager.graph.create_node("doc", "3")
    manager.assignments.grant(system, "editor", p1, folder)
    return p1, folder, doc1, doc2, doc3


class TestCan:
    """Tests for can/verify."""

    def test_conjunctive_roles(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that two roles covering half each do not add up."""
        manager.roles.define("reader", ["view"])
        manager.roles.define("publisher", ["publish"])
        p1 = manager.principal_for("user", "p1")
        node = manager.graph.create_node("doc", "a")
        manager.assignments.grant(system, "reader", p1, node)
        manager.assignments.grant(system, "publisher", p1, node)
        ctx = AuthContext.of([p1])
        assert manager.resolver.can(ctx, {"view"}, node)
        assert manager.resolver.can(ctx, {"publish"}, node)
        assert not manager.resolver.can(ctx, {"view", "publish"}, node)

    def test_empty_requirement(self, manager: AccessManager, tree) -> None:
        """Test that nothing required means allowed."""
        assert manager.resolver.can(AuthContext(), set(), tree[4])

    def test_unrestricted_context(self, manager: AccessManager, tree) -> None:
        """Test that the unrestrictable principal and trusted flag bypass checks."""
        doc3 = tree[4]
        assert manager.resolver.can(AuthContext.unrestricted(), {"edit"}, doc3)
        assert manager.resolver.can(AuthContext().trusted(), {"edit"}, doc3)

    def test_inherited_and_not(self, manager: AccessManager, tree) -> None:
        """Test inherited access below the grant only."""
        p1, folder, doc1, doc2, doc3 = tree
        ctx = AuthContext.of([p1])
        assert manager.resolver.can(ctx, {"edit"}, doc1)
        assert not manager.resolver.can(ctx, {"edit"}, doc3)
        assert manager.resolver.can(ctx, {"edit"}, [doc1, doc2])
        assert not manager.resolver.can(ctx, {"edit"}, [doc1, doc3])

    def test_unknown_permission(self, manager: AccessManager, tree) -> None:
        """Test that an unregistered permission is never granted."""
        p1, folder = tree[0], tree[1]
        assert not manager.resolver.can(AuthContext.of([p1]), {"launch"}, folder)

    def test_any_principal_suffices(self, manager: AccessManager, tree) -> None:
        """Test that one principal holding the role is enough."""
        p1, folder = tree[0], tree[1]
        other = manager.principal_for("user", "other")
        assert manager.resolver.can(AuthContext.of([other, p1]), {"edit"}, folder)

    def test_verify_raises_with_details(self, manager: AccessManager, tree, caplog) -> None:
        """Test that a denied verify raises and logs the audit line."""
        p1, folder = tree[0], tree[1]
        with pytest.raises(Unauthorized) as exc_info:
            manager.resolver.verify(AuthContext.of([p1]), {"edit", "grant_roles"}, folder)
        error = exc_info.value
        assert error.missing == ("grant_roles",)
        assert error.details["roles"] == ("editor",)
        assert error.details["nodes"] == (folder.id,)
        assert p1.id in error.details["principals"]
        assert str(error) == f"Missing grant_roles on node {folder.id}"
        assert "Access denied" in caplog.text

    def test_verify_passes(self, manager: AccessManager, tree) -> None:
        """Test that an allowed verify returns quietly."""
        p1, doc1 = tree[0], tree[2]
        manager.resolver.verify(AuthContext.of([p1]), {"view"}, doc1)

    def test_roles_and_permissions_at(self, manager: AccessManager, system: AuthContext, tree) -> None:
        """Test current roles include inherited and global grants."""
        p1, doc1 = tree[0], tree[2]
        manager.assignments.grant(system, "admin", p1, GLOBAL_NODE_ID)
        names = {role.name for role in manager.resolver.roles_at(AuthContext.of([p1]), doc1)}
        assert names == {"editor", "admin"}
        assert "grant_roles" in manager.resolver.permissions_at(AuthContext.of([p1]), doc1)


class TestRestriction:
    """Tests for restriction predicates."""

    @pytest.mark.parametrize("strategy", list(RestrictionStrategy))
    def test_restricts_to_reachable(self, manager: AccessManager, tree, strategy) -> None:
        """Test that only records below the grant pass."""
        p1 = tree[0]
        restriction = manager.resolver.restriction(AuthContext.of([p1]), "doc", {"view"}, strategy)
        assert restriction.allows("1")
        assert restriction.allows("2")
        assert not restriction.allows("3")
        assert not restriction.allows("f")

    def test_blocked_record_excluded(self, manager: AccessManager, tree) -> None:
        """Test that a blocked record is not visible through inheritance."""
        p1, folder, doc1 = tree[0], tree[1], tree[2]
        manager.graph.set_blocked(doc1, True)
        for strategy in RestrictionStrategy:
            restriction = manager.resolver.restriction(AuthContext.of([p1]), "doc", {"view"}, strategy)
            assert not restriction.allows("1")
            assert restriction.allows("2")

    def test_global_grant_is_unrestricted(self, manager: AccessManager, system: AuthContext, tree) -> None:
        """Test that a global grant removes the restriction."""
        p1 = tree[0]
        manager.assignments.grant(system, "admin", p1, GLOBAL_NODE_ID)
        restriction = manager.resolver.restriction(AuthContext.of([p1]), "doc", {"view"})
        assert isinstance(restriction, NullRestriction)

    def test_no_grants_is_deny_all(self, manager: AccessManager, tree) -> None:
        """Test that a principal with no accepting grant sees no rows."""
        stranger = manager.principal_for("user", "stranger")
        restriction = manager.resolver.restriction(AuthContext.of([stranger]), "doc", {"view"})
        assert isinstance(restriction, DenyAllRestriction)
        assert restriction.filter([]) == []

    def test_no_accepting_role_is_deny_all(self, manager: AccessManager, tree) -> None:
        """Test that a permission no role grants denies everything."""
        restriction = manager.resolver.restriction(AuthContext.of([tree[0]]), "doc", {"view", "publish"})
        assert isinstance(restriction, DenyAllRestriction)

    def test_trusted_is_unrestricted(self, manager: AccessManager, tree) -> None:
        """Test that trusted contexts are never restricted."""
        restriction = manager.resolver.restriction(AuthContext().trusted(), "doc", {"view"})
        assert isinstance(restriction, NullRestriction)

    def test_filter_records(self, manager: AccessManager, tree) -> None:
        """Test filtering application objects in Python."""

        class Doc:
            def __init__(self, securable_id: str) -> None:
                self.securable_id = securable_id

        docs = [Doc("1"), Doc("2"), Doc("3")]
        restriction = manager.resolver.restriction(AuthContext.of([tree[0]]), "doc", {"view"})
        assert [d.securable_id for d in restriction.filter(docs)] == ["1", "2"]

    def test_backend_specific_type(self, manager: AccessManager, tree) -> None:
        """Test that each store returns its own restriction shape."""
        restriction = manager.resolver.restriction(AuthContext.of([tree[0]]), "doc", {"view"})
        if isinstance(manager.store, SqlStore):
            assert isinstance(restriction, SubqueryRestriction)
            assert restriction.securable_ids() == {"1", "2"}
        else:
            assert isinstance(restriction, IdRestriction)
            assert restriction.securable_ids == {"1", "2"}


class TestSqlRestriction:
    """Restriction subqueries embedded in application queries."""

    @pytest.mark.parametrize("strategy", list(RestrictionStrategy))
    def test_applies_to_application_table(self, strategy) -> None:
        """Test the predicate as a WHERE clause over another table."""
        store = SqlStore.from_url("sqlite://")
        store.create_schema()
        manager = AccessManager(store)
        manager.permissions.register("view")
        manager.roles.define("viewer", ["view"])
        system = AuthContext().trusted()
        p1 = manager.principal_for("user", "p1")
        folder = manager.graph.create_node("folder", "f")
        for key in ("10", "11"):
            manager.graph.create_node("doc", key, [folder])
        manager.graph.create_node("doc", "12")
        manager.assignments.grant(system, "viewer", p1, folder)

        app = sa.MetaData()
        docs = sa.Table(
            "docs",
            app,
            sa.Column("id", sa.String(20), primary_key=True),
            sa.Column("title", sa.String(100)),
        )
        app.create_all(store.engine)
        with store.engine.begin() as connection:
            connection.execute(
                sa.insert(docs),
                [{"id": "10", "title": "a"}, {"id": "11", "title": "b"}, {"id": "12", "title": "c"}],
            )

        restriction = manager.resolver.restriction(AuthContext.of([p1]), "doc", {"view"}, strategy)
        statement = restriction.apply(sa.select(docs.c.id).order_by(docs.c.id), docs.c.id)
        with store.engine.connect() as connection:
            assert list(connection.execute(statement).scalars()) == ["10", "11"]
        store.engine.dispose()
