"""Logical storage contract shared by every backend.

A ``Store`` persists nodes, edges, principals, roles, assignments and the
derived effective assignments (the layout of the ``ag_*`` tables), and
answers reachability queries over the edge set.

Reachability is defined here once, breadth-first with a visited set, so
an in-memory backend satisfies the same contract the SQL backend serves
with recursive queries.

Edge rule: the global node is stored as the explicit parent of every node
that has no other parent. ``NodeGraph`` maintains that rule; stores only
record edges.
"""

from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Callable, ContextManager, Iterable, Optional, TypeVar

from ..models import (
    GLOBAL_NODE_ID,
    Assignment,
    EffectiveAssignment,
    Node,
    Principal,
    Role,
)

if TYPE_CHECKING:
    from ..config import RestrictionStrategy
    from ..restriction import Restriction

_F = TypeVar("_F", bound=Callable)

IdFilter = Optional[Iterable[int]]


def atomic(method: _F) -> _F:
    """Run a store write inside ``transaction()``.

    Joins the caller's transaction when one is open, otherwise commits on
    return.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.transaction():
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class Store(ABC):
    """Persistence contract for the access-control tables."""

    # ── Transactions ─────────────────────────────────────────────

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """Open an atomic unit of work.

        Nested calls join the outermost unit. An exception escaping the
        outermost block discards every change made inside it.
        """

    @abstractmethod
    def lock_nodes(self, node_ids: Iterable[int]) -> None:
        """Lock node rows whose effective assignments are about to change.

        Must be called inside ``transaction()``; locks are released when
        the outermost transaction ends.
        """

    # ── Nodes ────────────────────────────────────────────────────

    @abstractmethod
    def get_node(self, node_id: int) -> Node | None: ...

    @abstractmethod
    def find_node(self, securable_type: str, securable_id: str) -> Node | None: ...

    @abstractmethod
    def insert_node(
        self,
        securable_type: str,
        securable_id: str,
        *,
        blocked: bool = False,
        node_id: int | None = None,
    ) -> Node: ...

    @abstractmethod
    def update_node_blocked(self, node_id: int, blocked: bool) -> Node: ...

    @abstractmethod
    def delete_node(self, node_id: int) -> None: ...

    @abstractmethod
    def node_ids(self, securable_type: str | None = None) -> set[int]: ...

    # ── Edges ────────────────────────────────────────────────────

    @abstractmethod
    def parent_ids(self, node_id: int) -> set[int]: ...

    @abstractmethod
    def child_ids(self, node_id: int) -> set[int]: ...

    @abstractmethod
    def insert_edge(self, parent_id: int, child_id: int) -> None: ...

    @abstractmethod
    def delete_edge(self, parent_id: int, child_id: int) -> None: ...

    # ── Principals ───────────────────────────────────────────────

    @abstractmethod
    def get_principal(self, principal_id: int) -> Principal | None: ...

    @abstractmethod
    def find_principal(self, subject_type: str, subject_id: str) -> Principal | None: ...

    @abstractmethod
    def insert_principal(
        self,
        subject_type: str,
        subject_id: str,
        *,
        principal_id: int | None = None,
    ) -> Principal: ...

    @abstractmethod
    def delete_principal(self, principal_id: int) -> None: ...

    # ── Roles ────────────────────────────────────────────────────

    @abstractmethod
    def roles(self) -> list[Role]: ...

    @abstractmethod
    def insert_role(
        self,
        name: str,
        permissions: Iterable[str],
        *,
        local: bool = True,
        global_: bool = False,
    ) -> Role: ...

    @abstractmethod
    def update_role(self, role: Role) -> Role: ...

    @abstractmethod
    def delete_role(self, role_id: int) -> None: ...

    # ── Assignments ──────────────────────────────────────────────

    @abstractmethod
    def assignments(
        self,
        role_ids: IdFilter = None,
        principal_ids: IdFilter = None,
        node_ids: IdFilter = None,
    ) -> set[Assignment]:
        """Real assignments matching every given filter (None = any)."""

    @abstractmethod
    def insert_assignment(self, assignment: Assignment) -> bool:
        """Insert one assignment; False if the tuple already exists."""

    @abstractmethod
    def delete_assignments(self, assignments: Iterable[Assignment]) -> None: ...

    def has_assignment(
        self,
        role_ids: IdFilter = None,
        principal_ids: IdFilter = None,
        node_ids: IdFilter = None,
    ) -> bool:
        return bool(self.assignments(role_ids, principal_ids, node_ids))

    # ── Effective assignments ────────────────────────────────────

    @abstractmethod
    def effective(
        self,
        role_ids: IdFilter = None,
        principal_ids: IdFilter = None,
        node_ids: IdFilter = None,
    ) -> set[EffectiveAssignment]: ...

    @abstractmethod
    def insert_effective(self, tuples: Iterable[EffectiveAssignment]) -> None:
        """Insert tuples, ignoring ones already present."""

    @abstractmethod
    def delete_effective(self, tuples: Iterable[EffectiveAssignment]) -> None: ...

    @abstractmethod
    def clear_effective(self) -> None: ...

    def has_effective(
        self,
        role_ids: IdFilter = None,
        principal_ids: IdFilter = None,
        node_ids: IdFilter = None,
    ) -> bool:
        return bool(self.effective(role_ids, principal_ids, node_ids))

    # ── Reachability ─────────────────────────────────────────────

    def ancestor_ids(self, node_id: int, *, blocking: bool = True) -> set[int]:
        """Nodes whose assignments reach ``node_id`` (excluding itself).

        With ``blocking``, a blocked node inherits nothing, and the walk
        up stops at a blocked ancestor (which is still included).
        """
        if blocking and self._is_blocked(node_id):
            return set()
        found: set[int] = set()
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for parent_id in self.parent_ids(current):
                if parent_id in found:
                    continue
                found.add(parent_id)
                if not (blocking and self._is_blocked(parent_id)):
                    queue.append(parent_id)
        found.discard(node_id)
        return found

    def descendant_ids(self, node_id: int, *, blocking: bool = True) -> set[int]:
        """Nodes reached by assignments made at ``node_id`` (excluding itself).

        With ``blocking``, blocked descendants and everything below them
        are pruned.
        """
        found: set[int] = set()
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for child_id in self.child_ids(current):
                if child_id in found:
                    continue
                if blocking and self._is_blocked(child_id):
                    continue
                found.add(child_id)
                queue.append(child_id)
        found.discard(node_id)
        return found

    def _is_blocked(self, node_id: int) -> bool:
        node = self.get_node(node_id)
        return node is not None and node.blocked

    # ── Restriction ──────────────────────────────────────────────

    def restrict(
        self,
        securable_type: str,
        role_ids: Iterable[int],
        principal_ids: Iterable[int],
        strategy: "RestrictionStrategy",
    ) -> "Restriction":
        """Restriction to securables of ``securable_type`` where any of
        ``principal_ids`` holds any of ``role_ids``.

        Global-node assignments are ignored; callers resolve them first.
        """
        from ..config import RestrictionStrategy
        from ..restriction import IdRestriction

        role_ids = set(role_ids)
        principal_ids = set(principal_ids)
        if strategy == RestrictionStrategy.TRAVERSAL:
            node_ids: set[int] = set()
            anchors = {
                a.node_id
                for a in self.assignments(role_ids, principal_ids)
                if a.node_id != GLOBAL_NODE_ID
            }
            for anchor in anchors:
                node_ids.add(anchor)
                node_ids |= self.descendant_ids(anchor)
        else:
            node_ids = {e.node_id for e in self.effective(role_ids, principal_ids)}
        node_ids.discard(GLOBAL_NODE_ID)

        securable_ids = set()
        for node_id in node_ids:
            node = self.get_node(node_id)
            if node is not None and node.securable_type == securable_type:
                securable_ids.add(node.securable_id)
        return IdRestriction(securable_ids)


__all__ = ["IdFilter", "Store", "atomic"]
