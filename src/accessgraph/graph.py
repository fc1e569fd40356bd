"""Node graph: securable entities and their inheritance edges.

``NodeGraph`` owns the edge set. Every mutation validates first, then runs
inside one store transaction together with the effective-assignment
update it implies (see ``RolePropagation``).

Global node rule: the global node is stored as the explicit parent of
every node with no other parent. Adding a real parent drops that edge;
removing the last real parent restores it.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .exceptions import CycleError, NoGlobalNode, NotFoundError, ParentError
from .models import (
    GLOBAL_NODE_ID,
    GLOBAL_SECURABLE_ID,
    GLOBAL_SECURABLE_TYPE,
    Node,
    NodeRef,
    node_id_of,
)
from .propagation import RolePropagation
from .store import Store

logger = logging.getLogger(__name__)


class NodeGraph:
    """Nodes, parent/child edges and reachability queries."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self.propagation = RolePropagation(store, self)

    # ── Global node ──────────────────────────────────────────────

    def ensure_global_node(self) -> Node:
        """Create the global node if the store has none yet."""
        with self.store.transaction():
            node = self.store.get_node(GLOBAL_NODE_ID)
            if node is None:
                node = self.store.insert_node(
                    GLOBAL_SECURABLE_TYPE, GLOBAL_SECURABLE_ID, node_id=GLOBAL_NODE_ID
                )
                logger.info("Created global node")
        return node

    def global_node(self) -> Node:
        node = self.store.get_node(GLOBAL_NODE_ID)
        if node is None:
            raise NoGlobalNode()
        return node

    # ── Lookup ───────────────────────────────────────────────────

    def get(self, node: NodeRef) -> Node:
        node_id = node_id_of(node)
        found = self.store.get_node(node_id)
        if found is None:
            if node_id == GLOBAL_NODE_ID:
                raise NoGlobalNode()
            raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
        return found

    def find(self, securable_type: str, securable_id: str) -> Node | None:
        return self.store.find_node(securable_type, str(securable_id))

    def nodes(self, securable_type: str | None = None) -> set[int]:
        return self.store.node_ids(securable_type)

    # ── Lifecycle ────────────────────────────────────────────────

    def create_node(
        self,
        securable_type: str,
        securable_id: str,
        parents: Iterable[NodeRef] = (),
        *,
        blocked: bool = False,
    ) -> Node:
        """Create a node under ``parents`` (the global node when empty).

        The new node starts with the effective assignments inherited from
        its parents, or none when created blocked.
        """
        parent_ids = {node_id_of(parent) for parent in parents}
        with self.store.transaction():
            self.global_node()
            for parent_id in parent_ids:
                self.get(parent_id)
            parent_ids.discard(GLOBAL_NODE_ID)

            node = self.store.insert_node(securable_type, str(securable_id), blocked=blocked)
            for parent_id in parent_ids or {GLOBAL_NODE_ID}:
                self.store.insert_edge(parent_id, node.id)
            self.store.lock_nodes([node.id])
            self.propagation.recompute([node.id])
        logger.debug("Created node %s for %s %s under %s", node.id, securable_type, securable_id, sorted(parent_ids))
        return node

    def destroy_node(self, node: NodeRef) -> None:
        """Delete a node with its edges and assignments.

        Children left without parents fall back to the global node; the
        subtrees below re-derive their effective assignments.
        """
        node_id = node_id_of(node)
        if node_id == GLOBAL_NODE_ID:
            raise ParentError("The global node cannot be destroyed")
        with self.store.transaction():
            self.get(node_id)
            child_ids = self.store.child_ids(node_id)
            affected = set()
            for child_id in child_ids:
                affected |= self.reachable_from(child_id)
            self.store.lock_nodes(affected | {node_id})

            self.store.delete_node(node_id)
            for child_id in child_ids:
                if not self.store.parent_ids(child_id):
                    self.store.insert_edge(GLOBAL_NODE_ID, child_id)
            self.propagation.recompute(affected)
        logger.debug("Destroyed node %s (%d nodes re-derived)", node_id, len(affected))

    # ── Reachability ─────────────────────────────────────────────

    def parents_of(self, node: NodeRef) -> set[int]:
        return self.store.parent_ids(node_id_of(node))

    def children_of(self, node: NodeRef) -> set[int]:
        return self.store.child_ids(node_id_of(node))

    def ancestors_of(self, node: NodeRef, *, blocking: bool = True) -> set[int]:
        """Transitive parents of ``node``.

        With ``blocking`` the walk honours blocked nodes: a blocked node
        has no ancestors, and a blocked ancestor ends the walk above it.
        """
        return self.store.ancestor_ids(node_id_of(node), blocking=blocking)

    def descendants_of(self, node: NodeRef, *, blocking: bool = True) -> set[int]:
        """Transitive children of ``node``; blocked subtrees are pruned
        when ``blocking``."""
        return self.store.descendant_ids(node_id_of(node), blocking=blocking)

    def reaching(self, node: NodeRef) -> set[int]:
        """Nodes whose assignments apply at ``node``, itself included."""
        node_id = node_id_of(node)
        return {node_id} | self.store.ancestor_ids(node_id)

    def reachable_from(self, node: NodeRef) -> set[int]:
        """Nodes an assignment at ``node`` applies to, itself included."""
        node_id = node_id_of(node)
        return {node_id} | self.store.descendant_ids(node_id)

    # ── Edges ────────────────────────────────────────────────────

    def add_parent(self, node: NodeRef, parent: NodeRef) -> bool:
        """Attach ``node`` below ``parent``.

        Returns False when the edge already exists.

        Raises:
            ParentError: ``node`` is the global node or blocked, or
                ``parent`` is the global node while ``node`` has another
                parent.
            CycleError: ``parent`` is ``node`` or one of its descendants.
        """
        node_id, parent_id = node_id_of(node), node_id_of(parent)
        with self.store.transaction():
            target = self.get(node_id)
            self.get(parent_id)
            if target.is_global:
                raise ParentError("The global node cannot have parents", node_id=node_id)
            current = self.store.parent_ids(node_id)
            if parent_id in current:
                return False
            if parent_id == GLOBAL_NODE_ID:
                raise ParentError(
                    "The global node cannot be added next to other parents",
                    node_id=node_id,
                    parent_ids=sorted(current),
                )
            if target.blocked:
                raise ParentError("Cannot add a parent to a blocked node", node_id=node_id)
            if parent_id == node_id:
                raise CycleError(node_id=node_id, parent_id=parent_id)

            # Both lineages are locked before the cycle check so a concurrent
            # reverse edge waits and then sees this one.
            parent_lineage = {parent_id} | self.store.ancestor_ids(parent_id, blocking=False)
            self.store.lock_nodes(parent_lineage | self.reachable_from(node_id))
            if node_id in self.store.ancestor_ids(parent_id, blocking=False):
                raise CycleError(node_id=node_id, parent_id=parent_id)

            self.store.insert_edge(parent_id, node_id)
            if GLOBAL_NODE_ID in current:
                self.store.delete_edge(GLOBAL_NODE_ID, node_id)
            self.propagation.on_edge_added(node_id, parent_id)
        logger.debug("Added edge %s -> %s", parent_id, node_id)
        return True

    def remove_parent(self, node: NodeRef, parent: NodeRef) -> bool:
        """Detach ``node`` from ``parent``.

        Removing the global node, or a parent that is not one, does
        nothing and returns False.
        """
        node_id, parent_id = node_id_of(node), node_id_of(parent)
        if parent_id == GLOBAL_NODE_ID:
            return False
        with self.store.transaction():
            self.get(node_id)
            if parent_id not in self.store.parent_ids(node_id):
                return False

            self.store.lock_nodes(self.reachable_from(node_id))
            self.store.delete_edge(parent_id, node_id)
            if not self.store.parent_ids(node_id):
                self.store.insert_edge(GLOBAL_NODE_ID, node_id)
            self.propagation.on_edge_removed(node_id, parent_id)
        logger.debug("Removed edge %s -> %s", parent_id, node_id)
        return True

    def set_blocked(self, node: NodeRef, blocked: bool) -> Node:
        """Block or unblock inheritance into ``node`` and its subtree."""
        node_id = node_id_of(node)
        if node_id == GLOBAL_NODE_ID:
            raise ParentError("The global node cannot be blocked")
        with self.store.transaction():
            current = self.get(node_id)
            if current.blocked == blocked:
                return current
            self.store.lock_nodes(self.reachable_from(node_id))
            updated = self.store.update_node_blocked(node_id, blocked)
            self.propagation.on_block_changed(node_id)
        logger.debug("Node %s %s", node_id, "blocked" if blocked else "unblocked")
        return updated


__all__ = ["NodeGraph"]
