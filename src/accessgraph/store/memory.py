"""In-memory store.

State lives in plain dicts and sets. Transactions are copy-on-write: the
outermost ``transaction()`` takes the writer lock, works on a private copy
and swaps it in on success. Readers outside a transaction always see the
last committed state, never a half-propagated one.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from ..exceptions import NotFoundError, StorageError
from ..models import Assignment, EffectiveAssignment, Node, Principal, Role
from .base import IdFilter, Store, atomic

logger = logging.getLogger(__name__)


@dataclass
class _State:
    nodes: dict[int, Node] = field(default_factory=dict)
    node_keys: dict[tuple[str, str], int] = field(default_factory=dict)
    parents: dict[int, set[int]] = field(default_factory=dict)
    children: dict[int, set[int]] = field(default_factory=dict)
    principals: dict[int, Principal] = field(default_factory=dict)
    principal_keys: dict[tuple[str, str], int] = field(default_factory=dict)
    roles: dict[int, Role] = field(default_factory=dict)
    assignments: set[Assignment] = field(default_factory=set)
    # node id -> tuples at that node
    effective: dict[int, set[EffectiveAssignment]] = field(default_factory=dict)
    next_node_id: int = 1
    next_principal_id: int = 1
    next_role_id: int = 1


def _matches(value: int, allowed: set[int] | None) -> bool:
    return allowed is None or value in allowed


def _as_set(ids: IdFilter) -> set[int] | None:
    return None if ids is None else set(ids)


class MemoryStore(Store):
    """Process-local store for tests and embedded use."""

    def __init__(self) -> None:
        self._state = _State()
        self._writer = threading.RLock()
        self._local = threading.local()

    # ── Transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "state", None) is not None:
            yield
            return

        with self._writer:
            self._local.state = copy.deepcopy(self._state)
            self._local.locked = set()
            try:
                yield
            except BaseException:
                logger.debug("Rolling back in-memory transaction")
                raise
            else:
                self._state = self._local.state
            finally:
                self._local.state = None
                self._local.locked = set()

    def lock_nodes(self, node_ids: Iterable[int]) -> None:
        # The writer lock already serializes writers; record for inspection.
        if getattr(self._local, "state", None) is None:
            raise StorageError("lock_nodes called outside a transaction")
        self._local.locked.update(node_ids)

    @property
    def locked_node_ids(self) -> frozenset[int]:
        """Nodes locked by the current thread's open transaction."""
        return frozenset(getattr(self._local, "locked", None) or ())

    def _read(self) -> _State:
        state = getattr(self._local, "state", None)
        return state if state is not None else self._state

    def _write(self) -> _State:
        state = getattr(self._local, "state", None)
        if state is None:
            raise StorageError("Write outside a transaction")
        return state

    # ── Nodes ────────────────────────────────────────────────────

    def get_node(self, node_id: int) -> Node | None:
        return self._read().nodes.get(node_id)

    def find_node(self, securable_type: str, securable_id: str) -> Node | None:
        state = self._read()
        node_id = state.node_keys.get((securable_type, str(securable_id)))
        return None if node_id is None else state.nodes[node_id]

    @atomic
    def insert_node(self, securable_type, securable_id, *, blocked=False, node_id=None) -> Node:
        state = self._write()
        key = (securable_type, str(securable_id))
        if key in state.node_keys:
            raise StorageError(f"Node for {key} already exists")
        if node_id is None:
            node_id = state.next_node_id
        if node_id in state.nodes:
            raise StorageError(f"Node id {node_id} already exists")
        state.next_node_id = max(state.next_node_id, node_id + 1)
        node = Node(node_id, securable_type, str(securable_id), blocked)
        state.nodes[node_id] = node
        state.node_keys[key] = node_id
        state.parents[node_id] = set()
        state.children[node_id] = set()
        return node

    @atomic
    def update_node_blocked(self, node_id: int, blocked: bool) -> Node:
        state = self._write()
        try:
            node = state.nodes[node_id].with_blocked(blocked)
        except KeyError:
            raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
        state.nodes[node_id] = node
        return node

    @atomic
    def delete_node(self, node_id: int) -> None:
        state = self._write()
        node = state.nodes.pop(node_id, None)
        if node is None:
            return
        del state.node_keys[(node.securable_type, node.securable_id)]
        for parent_id in state.parents.pop(node_id, set()):
            state.children.get(parent_id, set()).discard(node_id)
        for child_id in state.children.pop(node_id, set()):
            state.parents.get(child_id, set()).discard(node_id)
        state.assignments = {a for a in state.assignments if a.node_id != node_id}
        state.effective.pop(node_id, None)

    def node_ids(self, securable_type: str | None = None) -> set[int]:
        return {
            node.id
            for node in self._read().nodes.values()
            if securable_type is None or node.securable_type == securable_type
        }

    # ── Edges ────────────────────────────────────────────────────

    def parent_ids(self, node_id: int) -> set[int]:
        return set(self._read().parents.get(node_id, ()))

    def child_ids(self, node_id: int) -> set[int]:
        return set(self._read().children.get(node_id, ()))

    @atomic
    def insert_edge(self, parent_id: int, child_id: int) -> None:
        state = self._write()
        if parent_id not in state.nodes or child_id not in state.nodes:
            raise NotFoundError("Edge endpoint not found", parent_id=parent_id, child_id=child_id)
        state.parents[child_id].add(parent_id)
        state.children[parent_id].add(child_id)

    @atomic
    def delete_edge(self, parent_id: int, child_id: int) -> None:
        state = self._write()
        state.parents.get(child_id, set()).discard(parent_id)
        state.children.get(parent_id, set()).discard(child_id)

    # ── Principals ───────────────────────────────────────────────

    def get_principal(self, principal_id: int) -> Principal | None:
        return self._read().principals.get(principal_id)

    def find_principal(self, subject_type: str, subject_id: str) -> Principal | None:
        state = self._read()
        principal_id = state.principal_keys.get((subject_type, str(subject_id)))
        return None if principal_id is None else state.principals[principal_id]

    @atomic
    def insert_principal(self, subject_type, subject_id, *, principal_id=None) -> Principal:
        state = self._write()
        key = (subject_type, str(subject_id))
        if key in state.principal_keys:
            raise StorageError(f"Principal for {key} already exists")
        if principal_id is None:
            principal_id = state.next_principal_id
        state.next_principal_id = max(state.next_principal_id, principal_id + 1)
        principal = Principal(principal_id, subject_type, str(subject_id))
        state.principals[principal_id] = principal
        state.principal_keys[key] = principal_id
        return principal

    @atomic
    def delete_principal(self, principal_id: int) -> None:
        state = self._write()
        principal = state.principals.pop(principal_id, None)
        if principal is None:
            return
        del state.principal_keys[(principal.subject_type, principal.subject_id)]
        state.assignments = {a for a in state.assignments if a.principal_id != principal_id}
        for node_id, tuples in state.effective.items():
            state.effective[node_id] = {e for e in tuples if e.principal_id != principal_id}

    # ── Roles ────────────────────────────────────────────────────

    def roles(self) -> list[Role]:
        return sorted(self._read().roles.values(), key=lambda role: role.id)

    @atomic
    def insert_role(self, name, permissions, *, local=True, global_=False) -> Role:
        state = self._write()
        if any(role.name == name for role in state.roles.values()):
            raise StorageError(f"Role {name!r} already exists")
        role = Role(state.next_role_id, name, frozenset(permissions), local, global_)
        state.roles[role.id] = role
        state.next_role_id += 1
        return role

    @atomic
    def update_role(self, role: Role) -> Role:
        state = self._write()
        if role.id not in state.roles:
            raise NotFoundError(f"Role {role.id} not found", role_id=role.id)
        state.roles[role.id] = role
        return role

    @atomic
    def delete_role(self, role_id: int) -> None:
        state = self._write()
        if state.roles.pop(role_id, None) is None:
            return
        state.assignments = {a for a in state.assignments if a.role_id != role_id}
        for node_id, tuples in state.effective.items():
            state.effective[node_id] = {e for e in tuples if e.role_id != role_id}

    # ── Assignments ──────────────────────────────────────────────

    def assignments(self, role_ids=None, principal_ids=None, node_ids=None) -> set[Assignment]:
        roles, principals, nodes = _as_set(role_ids), _as_set(principal_ids), _as_set(node_ids)
        return {
            a
            for a in self._read().assignments
            if _matches(a.role_id, roles)
            and _matches(a.principal_id, principals)
            and _matches(a.node_id, nodes)
        }

    @atomic
    def insert_assignment(self, assignment: Assignment) -> bool:
        state = self._write()
        if assignment in state.assignments:
            return False
        state.assignments.add(assignment)
        return True

    @atomic
    def delete_assignments(self, assignments: Iterable[Assignment]) -> None:
        self._write().assignments.difference_update(assignments)

    # ── Effective assignments ────────────────────────────────────

    def effective(self, role_ids=None, principal_ids=None, node_ids=None) -> set[EffectiveAssignment]:
        roles, principals = _as_set(role_ids), _as_set(principal_ids)
        state = self._read()
        if node_ids is None:
            buckets = state.effective.values()
        else:
            buckets = [state.effective.get(node_id, set()) for node_id in set(node_ids)]
        return {
            e
            for bucket in buckets
            for e in bucket
            if _matches(e.role_id, roles) and _matches(e.principal_id, principals)
        }

    @atomic
    def insert_effective(self, tuples: Iterable[EffectiveAssignment]) -> None:
        state = self._write()
        for e in tuples:
            state.effective.setdefault(e.node_id, set()).add(e)

    @atomic
    def delete_effective(self, tuples: Iterable[EffectiveAssignment]) -> None:
        state = self._write()
        for e in tuples:
            bucket = state.effective.get(e.node_id)
            if bucket is not None:
                bucket.discard(e)

    @atomic
    def clear_effective(self) -> None:
        self._write().effective.clear()


__all__ = ["MemoryStore"]
