"""Tests for accessgraph.propagation (effective-assignment maintenance)."""

from __future__ import annotations

import random

import pytest

from accessgraph import (
    GLOBAL_NODE_ID,
    AccessManager,
    AuthContext,
    CycleError,
    EffectiveAssignment,
    ParentError,
)


def _principal(manager: AccessManager, name: str):
    return manager.principal_for("user", name)


def _effective(manager: AccessManager, principal) -> set[tuple[str, int]]:
    return {
        (manager.roles.by_id(e.role_id).name, e.node_id)
        for e in manager.store.effective(principal_ids=[principal.id])
    }


class TestScenarios:
    """The end-to-end inheritance scenarios."""

    def test_child_inherits_owner(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a role at A applies at a child added below A."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        manager.assignments.grant(system, "owner", p1, a)
        b = manager.graph.create_node("doc", "b", [a])
        assert manager.resolver.can(AuthContext.of([p1]), {"edit"}, b)

    def test_edge_added_later(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that attaching an existing subtree carries grants down."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b")
        c = manager.graph.create_node("doc", "c", [b])
        manager.assignments.grant(system, "owner", p1, a)
        manager.graph.add_parent(b, a)
        assert _effective(manager, p1) == {("owner", a.id), ("owner", b.id), ("owner", c.id)}
        assert manager.graph.propagation.verify().consistent

    def test_block_removes_inherited(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that blocking B removes what B and below got from A."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b", [a])
        c = manager.graph.create_node("doc", "c", [b])
        manager.assignments.grant(system, "owner", p1, a)

        manager.graph.set_blocked(b, True)
        ctx = AuthContext.of([p1])
        assert not manager.resolver.can(ctx, {"edit"}, b)
        assert not manager.resolver.can(ctx, {"edit"}, c)
        assert _effective(manager, p1) == {("owner", a.id)}

        manager.graph.set_blocked(b, False)
        assert manager.resolver.can(ctx, {"edit"}, c)
        assert manager.graph.propagation.verify().consistent

    def test_block_keeps_direct_assignment(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a grant on the blocked node itself still applies below it."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b", [a])
        c = manager.graph.create_node("doc", "c", [b])
        manager.assignments.grant(system, "owner", p1, a)
        manager.assignments.grant(system, "viewer", p1, b)
        manager.graph.set_blocked(b, True)
        assert _effective(manager, p1) == {("owner", a.id), ("viewer", b.id), ("viewer", c.id)}

    def test_no_assignments_means_no_access(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a principal without grants sees nothing."""
        p2 = _principal(manager, "p2")
        node = manager.graph.create_node("doc", "a")
        assert not manager.resolver.can(AuthContext.of([p2]), {"view"}, node)

    def test_anonymous_global_grant(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a global grant to anonymous applies to everyone."""
        manager.roles.define("public", ["view"], local=False, global_=True)
        p2 = _principal(manager, "p2")
        node = manager.graph.create_node("doc", "a")
        manager.assignments.grant(system, "public", 0, GLOBAL_NODE_ID)
        assert manager.resolver.can(AuthContext.of([p2]), {"view"}, node)

    def test_sibling_revoke_is_independent(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that revoking at C keeps the grant at sibling D."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        c = manager.graph.create_node("doc", "c", [a])
        d = manager.graph.create_node("doc", "d", [a])
        shared = manager.graph.create_node("doc", "shared", [c, d])
        manager.assignments.grant(system, "editor", p1, c)
        manager.assignments.grant(system, "editor", p1, d)

        manager.assignments.revoke(system, "editor", p1, c)
        assert _effective(manager, p1) == {("editor", d.id), ("editor", shared.id)}
        assert manager.graph.propagation.verify().consistent


class TestAssignmentPropagation:
    """Tests for grant/revoke bookkeeping."""

    def test_grant_is_idempotent(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a repeated grant changes nothing."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        manager.graph.create_node("doc", "b", [a])
        assert manager.assignments.grant(system, "editor", p1, a) is True
        before = manager.store.effective()
        assert manager.assignments.grant(system, "editor", p1, a) is False
        assert manager.store.effective() == before
        assert len(manager.assignments.assigned_to(p1)) == 1

    def test_grant_revoke_round_trip(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that revoke after grant restores the index exactly."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b", [a])
        manager.assignments.grant(system, "viewer", p1, b)
        before = manager.store.effective()
        manager.assignments.grant(system, "editor", p1, a)
        manager.assignments.revoke(system, "editor", p1, a)
        assert manager.store.effective() == before

    def test_revoke_keeps_ancestor_justification(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a grant higher up keeps tuples a lower revoke would drop."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b", [a])
        c = manager.graph.create_node("doc", "c", [b])
        manager.assignments.grant(system, "editor", p1, a)
        manager.assignments.grant(system, "editor", p1, b)
        manager.assignments.revoke(system, "editor", p1, b)
        assert _effective(manager, p1) == {("editor", a.id), ("editor", b.id), ("editor", c.id)}

    def test_diamond_edge_removal(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that removing one path of a diamond keeps the other."""
        p1 = _principal(manager, "p1")
        top = manager.graph.create_node("doc", "top")
        left = manager.graph.create_node("doc", "left", [top])
        right = manager.graph.create_node("doc", "right", [top])
        bottom = manager.graph.create_node("doc", "bottom", [left, right])
        manager.assignments.grant(system, "editor", p1, top)

        manager.graph.remove_parent(bottom, left)
        assert ("editor", bottom.id) in _effective(manager, p1)
        manager.graph.remove_parent(bottom, right)
        assert ("editor", bottom.id) not in _effective(manager, p1)
        assert manager.graph.propagation.verify().consistent

    def test_global_assignment_stays_global(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that global grants are stored only at the global node."""
        p1 = _principal(manager, "p1")
        node = manager.graph.create_node("doc", "a")
        manager.assignments.grant(system, "admin", p1, GLOBAL_NODE_ID)
        assert _effective(manager, p1) == {("admin", GLOBAL_NODE_ID)}
        assert manager.resolver.can(AuthContext.of([p1]), {"edit"}, node)

    def test_destroy_node_rederives_children(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that destroying a node drops what it passed down."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b", [a])
        manager.assignments.grant(system, "editor", p1, a)
        manager.graph.destroy_node(a)
        assert _effective(manager, p1) == set()
        assert manager.graph.parents_of(b) == {GLOBAL_NODE_ID}

    def test_destroy_principal_and_role(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that cascading deletes leave the index consistent."""
        p1 = _principal(manager, "p1")
        p2 = _principal(manager, "p2")
        a = manager.graph.create_node("doc", "a")
        manager.graph.create_node("doc", "b", [a])
        manager.assignments.grant(system, "editor", p1, a)
        manager.assignments.grant(system, "viewer", p2, a)
        manager.destroy_principal(p1)
        manager.roles.remove("viewer")
        assert manager.store.effective() == set()
        assert manager.graph.propagation.verify().consistent


class TestRecovery:
    """Tests for verify/rebuild."""

    def test_verify_reports_drift(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that missing and stale tuples are both reported."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        b = manager.graph.create_node("doc", "b", [a])
        manager.assignments.grant(system, "editor", p1, a)
        editor = manager.roles.get("editor")
        bogus = EffectiveAssignment(editor.id, p1.id, GLOBAL_NODE_ID)
        lost = EffectiveAssignment(editor.id, p1.id, b.id)
        with manager.store.transaction():
            manager.store.insert_effective([bogus])
            manager.store.delete_effective([lost])

        report = manager.graph.propagation.verify()
        assert report.missing == {lost}
        assert report.stale == {bogus}
        assert not report.consistent

    def test_rebuild_restores(self, manager: AccessManager, system: AuthContext) -> None:
        """Test that a full rebuild regenerates the index."""
        p1 = _principal(manager, "p1")
        a = manager.graph.create_node("doc", "a")
        manager.graph.create_node("doc", "b", [a])
        manager.assignments.grant(system, "editor", p1, a)
        expected = manager.store.effective()
        with manager.store.transaction():
            manager.store.clear_effective()
        assert manager.graph.propagation.rebuild() == len(expected)
        assert manager.store.effective() == expected


class TestRandomSequences:
    """Seeded random mutation sequences stay consistent."""

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_matches_from_scratch(self, manager: AccessManager, system: AuthContext, seed: int) -> None:
        """Test that every step leaves the index equal to its derivation."""
        rng = random.Random(seed)
        principals = [_principal(manager, f"p{i}") for i in range(3)]
        roles = ["editor", "viewer"]
        nodes = [manager.graph.create_node("doc", f"n{i}").id for i in range(7)]
        propagation = manager.graph.propagation

        for _ in range(40):
            op = rng.choice(["grant", "revoke", "add_parent", "remove_parent", "set_blocked"])
            node = rng.choice(nodes)
            if op == "grant":
                manager.assignments.grant(system, rng.choice(roles), rng.choice(principals), node)
            elif op == "revoke":
                manager.assignments.revoke(system, rng.choice(roles), rng.choice(principals), node)
            elif op == "add_parent":
                try:
                    manager.graph.add_parent(node, rng.choice(nodes))
                except (CycleError, ParentError):
                    pass
            elif op == "remove_parent":
                manager.graph.remove_parent(node, rng.choice(nodes))
            else:
                manager.graph.set_blocked(node, rng.random() < 0.3)
            assert propagation.verify().consistent, op

        for node_id in nodes:
            parents = manager.graph.parents_of(node_id)
            assert parents
            assert GLOBAL_NODE_ID not in parents or parents == {GLOBAL_NODE_ID}
            assert node_id not in manager.graph.ancestors_of(node_id, blocking=False)
