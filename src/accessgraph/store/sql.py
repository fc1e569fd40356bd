"""SQLAlchemy Core store.

Reachability and restriction predicates are recursive common table
expressions evaluated by the database; node locks use
``SELECT ... FOR UPDATE`` (a no-op on SQLite, which serializes writers
itself).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager, nullcontext
from typing import ContextManager, Iterable, Iterator

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..config import RestrictionStrategy
from ..exceptions import NotFoundError, StorageError
from ..models import GLOBAL_NODE_ID, Assignment, EffectiveAssignment, Node, Principal, Role
from ..restriction import Restriction, SubqueryRestriction
from . import tables as t
from .base import IdFilter, Store, atomic

logger = logging.getLogger(__name__)


def _node(row) -> Node:
    return Node(row.id, row.securable_type, row.securable_id, bool(row.blocked))


def _principal(row) -> Principal:
    return Principal(row.id, row.subject_type, row.subject_id)


def _filtered(statement, table: sa.Table, role_ids: IdFilter, principal_ids: IdFilter, node_ids: IdFilter):
    if role_ids is not None:
        statement = statement.where(table.c.role_id.in_(list(role_ids)))
    if principal_ids is not None:
        statement = statement.where(table.c.principal_id.in_(list(principal_ids)))
    if node_ids is not None:
        statement = statement.where(table.c.node_id.in_(list(node_ids)))
    return statement


class SqlStore(Store):
    """Store backed by the ``ag_*`` tables of a SQLAlchemy engine.

    On a ``StaticPool`` engine every thread shares one DBAPI connection, so
    transactions and reads outside them are serialized on a store lock;
    otherwise a reader would see another thread's uncommitted writes.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._local = threading.local()
        self._shared_lock = threading.RLock() if isinstance(engine.pool, StaticPool) else None

    def _serialized(self) -> ContextManager[object]:
        return self._shared_lock if self._shared_lock is not None else nullcontext()

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "SqlStore":
        """Create a store for ``url``.

        An in-memory SQLite URL gets a single shared connection so every
        caller sees the same database.
        """
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        return cls(sa.create_engine(url, **engine_kwargs))

    def create_schema(self) -> None:
        t.metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        t.metadata.drop_all(self.engine)

    # ── Transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "connection", None) is not None:
            yield
            return

        try:
            with self._serialized(), self.engine.begin() as connection:
                self._local.connection = connection
                try:
                    yield
                finally:
                    self._local.connection = None
        except SQLAlchemyError as e:
            raise StorageError(f"Database error: {e}") from e

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            yield connection
            return
        with self._serialized(), self.engine.connect() as connection:
            yield connection

    def _execute(self, statement, parameters=None):
        connection = getattr(self._local, "connection", None)
        if connection is None:
            raise StorageError("Write outside a transaction")
        return connection.execute(statement, parameters)

    def lock_nodes(self, node_ids: Iterable[int]) -> None:
        node_ids = sorted(set(node_ids))
        if not node_ids:
            return
        # Sorted ids give every writer the same lock order.
        statement = sa.select(t.nodes.c.id).where(t.nodes.c.id.in_(node_ids)).order_by(t.nodes.c.id)
        self._execute(statement.with_for_update()).all()

    # ── Nodes ────────────────────────────────────────────────────

    def get_node(self, node_id: int) -> Node | None:
        with self._connect() as connection:
            row = connection.execute(sa.select(t.nodes).where(t.nodes.c.id == node_id)).first()
        return None if row is None else _node(row)

    def find_node(self, securable_type: str, securable_id: str) -> Node | None:
        statement = sa.select(t.nodes).where(
            t.nodes.c.securable_type == securable_type,
            t.nodes.c.securable_id == str(securable_id),
        )
        with self._connect() as connection:
            row = connection.execute(statement).first()
        return None if row is None else _node(row)

    @atomic
    def insert_node(self, securable_type, securable_id, *, blocked=False, node_id=None) -> Node:
        values = {"securable_type": securable_type, "securable_id": str(securable_id), "blocked": blocked}
        if node_id is not None:
            values["id"] = node_id
        try:
            result = self._execute(sa.insert(t.nodes).values(**values))
        except IntegrityError as e:
            raise StorageError(f"Node for {(securable_type, securable_id)} already exists") from e
        new_id = node_id if node_id is not None else result.inserted_primary_key[0]
        return Node(new_id, securable_type, str(securable_id), blocked)

    @atomic
    def update_node_blocked(self, node_id: int, blocked: bool) -> Node:
        self._execute(sa.update(t.nodes).where(t.nodes.c.id == node_id).values(blocked=blocked))
        node = self.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
        return node

    @atomic
    def delete_node(self, node_id: int) -> None:
        self._execute(sa.delete(t.edges).where(sa.or_(t.edges.c.parent_id == node_id, t.edges.c.child_id == node_id)))
        self._execute(sa.delete(t.assignments).where(t.assignments.c.node_id == node_id))
        self._execute(sa.delete(t.effective_assignments).where(t.effective_assignments.c.node_id == node_id))
        self._execute(sa.delete(t.nodes).where(t.nodes.c.id == node_id))

    def node_ids(self, securable_type: str | None = None) -> set[int]:
        statement = sa.select(t.nodes.c.id)
        if securable_type is not None:
            statement = statement.where(t.nodes.c.securable_type == securable_type)
        with self._connect() as connection:
            return set(connection.execute(statement).scalars())

    # ── Edges ────────────────────────────────────────────────────

    def parent_ids(self, node_id: int) -> set[int]:
        statement = sa.select(t.edges.c.parent_id).where(t.edges.c.child_id == node_id)
        with self._connect() as connection:
            return set(connection.execute(statement).scalars())

    def child_ids(self, node_id: int) -> set[int]:
        statement = sa.select(t.edges.c.child_id).where(t.edges.c.parent_id == node_id)
        with self._connect() as connection:
            return set(connection.execute(statement).scalars())

    @atomic
    def insert_edge(self, parent_id: int, child_id: int) -> None:
        try:
            self._execute(sa.insert(t.edges).values(parent_id=parent_id, child_id=child_id))
        except IntegrityError as e:
            raise StorageError(f"Edge {parent_id} -> {child_id} already exists") from e

    @atomic
    def delete_edge(self, parent_id: int, child_id: int) -> None:
        self._execute(
            sa.delete(t.edges).where(t.edges.c.parent_id == parent_id, t.edges.c.child_id == child_id)
        )

    # ── Principals ───────────────────────────────────────────────

    def get_principal(self, principal_id: int) -> Principal | None:
        with self._connect() as connection:
            row = connection.execute(sa.select(t.principals).where(t.principals.c.id == principal_id)).first()
        return None if row is None else _principal(row)

    def find_principal(self, subject_type: str, subject_id: str) -> Principal | None:
        statement = sa.select(t.principals).where(
            t.principals.c.subject_type == subject_type,
            t.principals.c.subject_id == str(subject_id),
        )
        with self._connect() as connection:
            row = connection.execute(statement).first()
        return None if row is None else _principal(row)

    @atomic
    def insert_principal(self, subject_type, subject_id, *, principal_id=None) -> Principal:
        values = {"subject_type": subject_type, "subject_id": str(subject_id)}
        if principal_id is not None:
            values["id"] = principal_id
        try:
            result = self._execute(sa.insert(t.principals).values(**values))
        except IntegrityError as e:
            raise StorageError(f"Principal for {(subject_type, subject_id)} already exists") from e
        new_id = principal_id if principal_id is not None else result.inserted_primary_key[0]
        return Principal(new_id, subject_type, str(subject_id))

    @atomic
    def delete_principal(self, principal_id: int) -> None:
        self._execute(sa.delete(t.assignments).where(t.assignments.c.principal_id == principal_id))
        self._execute(
            sa.delete(t.effective_assignments).where(t.effective_assignments.c.principal_id == principal_id)
        )
        self._execute(sa.delete(t.principals).where(t.principals.c.id == principal_id))

    # ── Roles ────────────────────────────────────────────────────

    def roles(self) -> list[Role]:
        with self._connect() as connection:
            rows = connection.execute(sa.select(t.roles).order_by(t.roles.c.id)).all()
            permission_rows = connection.execute(sa.select(t.role_permissions)).all()
        permissions: dict[int, set[str]] = {}
        for row in permission_rows:
            permissions.setdefault(row.role_id, set()).add(row.permission_name)
        return [
            Role(
                row.id,
                row.name,
                frozenset(permissions.get(row.id, ())),
                bool(row.local),
                bool(row._mapping["global"]),
            )
            for row in rows
        ]

    @atomic
    def insert_role(self, name, permissions, *, local=True, global_=False) -> Role:
        try:
            result = self._execute(sa.insert(t.roles).values({"name": name, "local": local, "global": global_}))
        except IntegrityError as e:
            raise StorageError(f"Role {name!r} already exists") from e
        role = Role(result.inserted_primary_key[0], name, frozenset(permissions), local, global_)
        self._write_permissions(role)
        return role

    @atomic
    def update_role(self, role: Role) -> Role:
        result = self._execute(
            sa.update(t.roles)
            .where(t.roles.c.id == role.id)
            .values({"name": role.name, "local": role.local, "global": role.global_})
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Role {role.id} not found", role_id=role.id)
        self._execute(sa.delete(t.role_permissions).where(t.role_permissions.c.role_id == role.id))
        self._write_permissions(role)
        return role

    def _write_permissions(self, role: Role) -> None:
        if role.permissions:
            self._execute(
                sa.insert(t.role_permissions),
                [{"role_id": role.id, "permission_name": name} for name in sorted(role.permissions)],
            )

    @atomic
    def delete_role(self, role_id: int) -> None:
        self._execute(sa.delete(t.assignments).where(t.assignments.c.role_id == role_id))
        self._execute(sa.delete(t.effective_assignments).where(t.effective_assignments.c.role_id == role_id))
        self._execute(sa.delete(t.role_permissions).where(t.role_permissions.c.role_id == role_id))
        self._execute(sa.delete(t.roles).where(t.roles.c.id == role_id))

    # ── Assignments ──────────────────────────────────────────────

    def assignments(self, role_ids=None, principal_ids=None, node_ids=None) -> set[Assignment]:
        statement = _filtered(sa.select(t.assignments), t.assignments, role_ids, principal_ids, node_ids)
        with self._connect() as connection:
            return {Assignment(row.role_id, row.principal_id, row.node_id) for row in connection.execute(statement)}

    def has_assignment(self, role_ids=None, principal_ids=None, node_ids=None) -> bool:
        inner = _filtered(sa.select(t.assignments.c.role_id), t.assignments, role_ids, principal_ids, node_ids)
        with self._connect() as connection:
            return bool(connection.execute(sa.select(inner.exists())).scalar())

    @atomic
    def insert_assignment(self, assignment: Assignment) -> bool:
        if self.has_assignment([assignment.role_id], [assignment.principal_id], [assignment.node_id]):
            return False
        self._execute(
            sa.insert(t.assignments).values(
                role_id=assignment.role_id,
                principal_id=assignment.principal_id,
                node_id=assignment.node_id,
            )
        )
        return True

    @atomic
    def delete_assignments(self, assignments: Iterable[Assignment]) -> None:
        for a in assignments:
            self._execute(
                sa.delete(t.assignments).where(
                    t.assignments.c.role_id == a.role_id,
                    t.assignments.c.principal_id == a.principal_id,
                    t.assignments.c.node_id == a.node_id,
                )
            )

    # ── Effective assignments ────────────────────────────────────

    def effective(self, role_ids=None, principal_ids=None, node_ids=None) -> set[EffectiveAssignment]:
        table = t.effective_assignments
        statement = _filtered(sa.select(table), table, role_ids, principal_ids, node_ids)
        with self._connect() as connection:
            return {EffectiveAssignment(row.role_id, row.principal_id, row.node_id) for row in connection.execute(statement)}

    def has_effective(self, role_ids=None, principal_ids=None, node_ids=None) -> bool:
        table = t.effective_assignments
        inner = _filtered(sa.select(table.c.role_id), table, role_ids, principal_ids, node_ids)
        with self._connect() as connection:
            return bool(connection.execute(sa.select(inner.exists())).scalar())

    @atomic
    def insert_effective(self, tuples: Iterable[EffectiveAssignment]) -> None:
        tuples = set(tuples)
        if not tuples:
            return
        existing = self.effective(
            {e.role_id for e in tuples},
            {e.principal_id for e in tuples},
            {e.node_id for e in tuples},
        )
        rows = [
            {"role_id": e.role_id, "principal_id": e.principal_id, "node_id": e.node_id}
            for e in sorted(tuples - existing, key=lambda e: (e.node_id, e.role_id, e.principal_id))
        ]
        if rows:
            self._execute(sa.insert(t.effective_assignments), rows)

    @atomic
    def delete_effective(self, tuples: Iterable[EffectiveAssignment]) -> None:
        table = t.effective_assignments
        for e in tuples:
            self._execute(
                sa.delete(table).where(
                    table.c.role_id == e.role_id,
                    table.c.principal_id == e.principal_id,
                    table.c.node_id == e.node_id,
                )
            )

    @atomic
    def clear_effective(self) -> None:
        self._execute(sa.delete(t.effective_assignments))

    # ── Reachability ─────────────────────────────────────────────

    def _descendants_cte(self, anchor: sa.Select, *, blocking: bool, name: str) -> sa.CTE:
        """Recursive CTE of node ids below the ids selected by ``anchor``."""
        edge = t.edges.alias(f"{name}_edge")
        child = t.nodes.alias(f"{name}_child")
        base = (
            sa.select(edge.c.child_id.label("id"))
            .join(child, child.c.id == edge.c.child_id)
            .where(edge.c.parent_id.in_(anchor))
        )
        if blocking:
            base = base.where(child.c.blocked == sa.false())
        cte = base.cte(name, recursive=True)

        step_edge = t.edges.alias(f"{name}_step_edge")
        step_child = t.nodes.alias(f"{name}_step_child")
        step = (
            sa.select(step_edge.c.child_id.label("id"))
            .join(cte, step_edge.c.parent_id == cte.c.id)
            .join(step_child, step_child.c.id == step_edge.c.child_id)
        )
        if blocking:
            step = step.where(step_child.c.blocked == sa.false())
        return cte.union(step)

    def descendant_ids(self, node_id: int, *, blocking: bool = True) -> set[int]:
        cte = self._descendants_cte(sa.select(sa.literal(node_id)), blocking=blocking, name="descendants")
        with self._connect() as connection:
            found = set(connection.execute(sa.select(cte.c.id)).scalars())
        found.discard(node_id)
        return found

    def ancestor_ids(self, node_id: int, *, blocking: bool = True) -> set[int]:
        if blocking and self._is_blocked(node_id):
            return set()
        edge = t.edges.alias("anc_edge")
        cte = (
            sa.select(edge.c.parent_id.label("id"))
            .where(edge.c.child_id == node_id)
            .cte("ancestors", recursive=True)
        )
        step_edge = t.edges.alias("anc_step_edge")
        via = t.nodes.alias("anc_via")
        step = (
            sa.select(step_edge.c.parent_id.label("id"))
            .join(cte, step_edge.c.child_id == cte.c.id)
            .join(via, via.c.id == cte.c.id)
        )
        if blocking:
            # A blocked ancestor is included but nothing above it.
            step = step.where(via.c.blocked == sa.false())
        cte = cte.union(step)
        with self._connect() as connection:
            found = set(connection.execute(sa.select(cte.c.id)).scalars())
        found.discard(node_id)
        return found

    # ── Restriction ──────────────────────────────────────────────

    def restrict(self, securable_type, role_ids, principal_ids, strategy) -> Restriction:
        role_ids = sorted(set(role_ids))
        principal_ids = sorted(set(principal_ids))
        if strategy == RestrictionStrategy.TRAVERSAL:
            anchor = (
                sa.select(t.assignments.c.node_id.label("id"))
                .where(t.assignments.c.role_id.in_(role_ids))
                .where(t.assignments.c.principal_id.in_(principal_ids))
                .where(t.assignments.c.node_id != GLOBAL_NODE_ID)
            )
            below = self._descendants_cte(anchor, blocking=True, name="granted")
            reachable = sa.union(anchor, sa.select(below.c.id)).subquery("reachable")
            node_ids = sa.select(reachable.c.id)
        else:
            table = t.effective_assignments
            node_ids = (
                sa.select(table.c.node_id)
                .where(table.c.role_id.in_(role_ids))
                .where(table.c.principal_id.in_(principal_ids))
            )
        statement = (
            sa.select(t.nodes.c.securable_id)
            .where(t.nodes.c.securable_type == securable_type)
            .where(t.nodes.c.id.in_(node_ids))
            .where(t.nodes.c.id != GLOBAL_NODE_ID)
        )
        return SubqueryRestriction(statement, self)

    def contains(self, statement: sa.Select, securable_id: str) -> bool:
        """True if ``statement`` (one column of securable ids) yields ``securable_id``."""
        inner = statement.subquery()
        column = inner.c.securable_id
        query = sa.select(sa.select(column).where(column == str(securable_id)).exists())
        with self._connect() as connection:
            return bool(connection.execute(query).scalar())

    def fetch_ids(self, statement: sa.Select) -> set[str]:
        with self._connect() as connection:
            return set(connection.execute(statement).scalars())


__all__ = ["SqlStore"]
