"""Maintenance of the effective-assignment index.

``RolePropagation`` is the only writer of effective assignments. Every
update keeps one rule true: for each real assignment ``(r, p, n)`` the
index holds ``(r, p, n')`` for ``n`` and each of its descendants reached
without crossing a blocked node, and nothing else. Assignments at the
global node stay at the global node; resolvers check it first.

Assignment changes are applied incrementally. Edge and block changes
re-derive the affected subtree from the surviving assignments, which is
correct for any topology (diamonds included).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from .models import GLOBAL_NODE_ID, Assignment, EffectiveAssignment
from .store import Store

if TYPE_CHECKING:
    from .graph import NodeGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsistencyReport:
    """Difference between the stored index and a from-scratch derivation."""

    missing: frozenset[EffectiveAssignment] = field(default_factory=frozenset)
    stale: frozenset[EffectiveAssignment] = field(default_factory=frozenset)

    @property
    def consistent(self) -> bool:
        return not self.missing and not self.stale


class RolePropagation:
    """Keeps ``effective_assignments`` equal to its derivation."""

    def __init__(self, store: Store, graph: "NodeGraph") -> None:
        self.store = store
        self.graph = graph

    def targets(self, node_id: int) -> set[int]:
        """Nodes an assignment at ``node_id`` produces tuples at."""
        if node_id == GLOBAL_NODE_ID:
            return {GLOBAL_NODE_ID}
        return self.graph.reachable_from(node_id)

    # ── Assignment changes ───────────────────────────────────────

    def propagate(self, assignment: Assignment) -> int:
        """Add the tuples a newly inserted ``assignment`` justifies."""
        targets = self.targets(assignment.node_id)
        self.store.lock_nodes(targets)
        self.store.insert_effective(
            EffectiveAssignment(assignment.role_id, assignment.principal_id, node_id)
            for node_id in targets
        )
        logger.debug("Propagated %s to %d nodes", assignment, len(targets))
        return len(targets)

    def depropagate(self, assignment: Assignment) -> int:
        """Remove tuples of a deleted ``assignment`` nothing else justifies.

        Other surviving assignments of the same role and principal keep
        their tuples, whichever path they reach a node through.
        """
        targets = self.targets(assignment.node_id)
        self.store.lock_nodes(targets)
        justified: set[int] = set()
        for other in self.store.assignments([assignment.role_id], [assignment.principal_id]):
            justified |= self.targets(other.node_id)
        stale = targets - justified
        self.store.delete_effective(
            EffectiveAssignment(assignment.role_id, assignment.principal_id, node_id)
            for node_id in stale
        )
        logger.debug("Depropagated %s from %d of %d nodes", assignment, len(stale), len(targets))
        return len(stale)

    # ── Graph changes ────────────────────────────────────────────

    def on_edge_added(self, node_id: int, parent_id: int) -> int:
        """Copy what ``parent_id`` holds into the subtree of ``node_id``."""
        if parent_id == GLOBAL_NODE_ID or self.graph.get(node_id).blocked:
            return 0
        pairs = {(e.role_id, e.principal_id) for e in self.store.effective(node_ids=[parent_id])}
        if not pairs:
            return 0
        targets = self.graph.reachable_from(node_id)
        self.store.lock_nodes(targets)
        self.store.insert_effective(
            EffectiveAssignment(role_id, principal_id, target)
            for role_id, principal_id in pairs
            for target in targets
        )
        logger.debug("Edge %s -> %s carried %d pairs to %d nodes", parent_id, node_id, len(pairs), len(targets))
        return len(pairs) * len(targets)

    def on_edge_removed(self, node_id: int, parent_id: int) -> int:
        return self.recompute(self.graph.reachable_from(node_id))

    def on_block_changed(self, node_id: int) -> int:
        return self.recompute(self.graph.reachable_from(node_id))

    # ── Derivation ───────────────────────────────────────────────

    def derive(self, node_id: int) -> set[EffectiveAssignment]:
        """Tuples that should exist at ``node_id``."""
        if node_id == GLOBAL_NODE_ID:
            sources = {GLOBAL_NODE_ID}
        else:
            sources = self.graph.reaching(node_id) - {GLOBAL_NODE_ID}
        return {
            EffectiveAssignment(a.role_id, a.principal_id, node_id)
            for a in self.store.assignments(node_ids=sources)
        }

    def recompute(self, node_ids: Iterable[int]) -> int:
        """Re-derive the tuples of ``node_ids``; returns the number changed."""
        node_ids = set(node_ids)
        self.store.lock_nodes(node_ids)
        changed = 0
        for node_id in node_ids:
            desired = self.derive(node_id)
            current = self.store.effective(node_ids=[node_id])
            if desired != current:
                self.store.insert_effective(desired - current)
                self.store.delete_effective(current - desired)
                changed += len(desired ^ current)
        if changed:
            logger.debug("Recomputed %d nodes, %d tuples changed", len(node_ids), changed)
        return changed

    def expected(self) -> set[EffectiveAssignment]:
        """The whole index derived from assignments, edges and block flags."""
        expected: set[EffectiveAssignment] = set()
        for assignment in self.store.assignments():
            for node_id in self.targets(assignment.node_id):
                expected.add(EffectiveAssignment(assignment.role_id, assignment.principal_id, node_id))
        return expected

    # ── Recovery ─────────────────────────────────────────────────

    def verify(self) -> ConsistencyReport:
        expected = self.expected()
        actual = self.store.effective()
        report = ConsistencyReport(frozenset(expected - actual), frozenset(actual - expected))
        if not report.consistent:
            logger.warning(
                "Effective assignments out of date: %d missing, %d stale",
                len(report.missing),
                len(report.stale),
            )
        return report

    def rebuild(self) -> int:
        """Discard and regenerate every effective assignment."""
        with self.store.transaction():
            self.store.lock_nodes(self.store.node_ids())
            expected = self.expected()
            self.store.clear_effective()
            self.store.insert_effective(expected)
        logger.info("Rebuilt %d effective assignments", len(expected))
        return len(expected)


__all__ = ["ConsistencyReport", "RolePropagation"]
