"""Granting and revoking roles.

Every grant and revoke checks role flags and the granter's authority
before touching the store, then updates the assignment and its effective
tuples in one transaction.
"""

from __future__ import annotations

import itertools
import logging
from typing import Iterable, Union

from .config import AccessControlConfig
from .context import AuthContext
from .exceptions import InvalidRoleAssignment, NotFoundError, Unauthorized
from .graph import NodeGraph
from .logging import get_access_logger, log_unauthorized
from .models import (
    Assignment,
    Node,
    NodeRef,
    Principal,
    PrincipalRef,
    Role,
    node_id_of,
    principal_id_of,
)
from .registry import GRANT_ROLES, SHARE_OWN_ROLES, RoleRegistry
from .resolver import PermissionResolver
from .store import Store

logger = logging.getLogger(__name__)

RoleSpec = Union[Role, str]


class AssignmentStore:
    """Real assignments and their authorization rules."""

    def __init__(
        self,
        store: Store,
        graph: NodeGraph,
        roles: RoleRegistry,
        resolver: PermissionResolver,
        config: AccessControlConfig | None = None,
    ) -> None:
        self.store = store
        self.graph = graph
        self.roles = roles
        self.resolver = resolver
        self.config = config or AccessControlConfig()

    # ── Resolution ───────────────────────────────────────────────

    def _role(self, role: RoleSpec) -> Role:
        return self.roles.get(role) if isinstance(role, str) else role

    def _principal(self, principal: PrincipalRef) -> Principal:
        principal_id = principal_id_of(principal)
        found = self.store.get_principal(principal_id)
        if found is None:
            raise NotFoundError(f"Principal {principal_id} not found", principal_id=principal_id)
        return found

    # ── Authorization ────────────────────────────────────────────

    def can_assign_or_unassign(self, ctx: AuthContext, role: RoleSpec, node: NodeRef) -> bool:
        """True if ``ctx`` may grant or revoke ``role`` on ``node``.

        Requires ``grant_roles`` there, or ``share_own_roles`` together
        with ``role`` itself.
        """
        if not self.config.restrict_assignment or ctx.unrestricted_access:
            return True
        role = self._role(role)
        if self.resolver.can(ctx, {GRANT_ROLES}, node):
            return True
        return self.resolver.can(ctx, {SHARE_OWN_ROLES}, node) and self.resolver.has_role_at(ctx, role, node)

    def verify_assignment(self, ctx: AuthContext, role: RoleSpec, node: NodeRef) -> None:
        if self.can_assign_or_unassign(ctx, role, node):
            return
        node_id = node_id_of(node)
        held = {r.name for r in self.resolver.roles_at(ctx, node_id)}
        principal_ids = self.resolver.principal_ids(ctx)
        log_unauthorized({GRANT_ROLES}, held, [node_id], principal_ids)
        raise Unauthorized(missing={GRANT_ROLES}, roles=held, nodes=[node_id], principals=principal_ids)

    def _validate(self, ctx: AuthContext, role: Role, node: Node) -> None:
        if not role.assignable_on(node.id):
            where = "the global node" if node.is_global else f"node {node.id}"
            raise InvalidRoleAssignment(
                f"Role {role.name!r} cannot be assigned on {where}",
                role=role.name,
                node_id=node.id,
            )
        self.verify_assignment(ctx, role, node)

    # ── Grant / revoke ───────────────────────────────────────────

    def grant(self, ctx: AuthContext, role: RoleSpec, principal: PrincipalRef, node: NodeRef) -> bool:
        """Assign ``role`` to ``principal`` at ``node``.

        Returns False when the assignment already existed.

        Raises:
            InvalidRoleAssignment: the role's flags exclude this node.
            Unauthorized: ``ctx`` may not grant the role here.
        """
        role = self._role(role)
        with self.store.transaction():
            target = self.graph.get(node)
            grantee = self._principal(principal)
            self._validate(ctx, role, target)

            assignment = Assignment(role.id, grantee.id, target.id)
            self.store.lock_nodes([target.id])
            if not self.store.insert_assignment(assignment):
                return False
            self.graph.propagation.propagate(assignment)
        get_access_logger(__name__, ctx).debug(
            "Granted %s to principal %s at node %s", role.name, grantee.id, target.id
        )
        return True

    def revoke(self, ctx: AuthContext, role: RoleSpec, principal: PrincipalRef, node: NodeRef) -> bool:
        """Remove the assignment; False when there was none."""
        role = self._role(role)
        assignment = Assignment(role.id, principal_id_of(principal), node_id_of(node))
        with self.store.transaction():
            self.verify_assignment(ctx, role, assignment.node_id)
            if not self.store.has_assignment([role.id], [assignment.principal_id], [assignment.node_id]):
                return False
            self.store.lock_nodes([assignment.node_id])
            self.store.delete_assignments([assignment])
            self.graph.propagation.depropagate(assignment)
        get_access_logger(__name__, ctx).debug(
            "Revoked %s from principal %s at node %s", role.name, assignment.principal_id, assignment.node_id
        )
        return True

    def grant_all(
        self,
        ctx: AuthContext,
        roles: Iterable[RoleSpec],
        principals: Iterable[PrincipalRef],
        nodes: Iterable[NodeRef],
    ) -> int:
        """Grant every combination of roles, principals and nodes at once.

        All or nothing: one refused combination aborts the batch.
        """
        combinations = list(itertools.product(list(roles), list(principals), list(nodes)))
        with self.store.transaction():
            granted = sum(self.grant(ctx, role, principal, node) for role, principal, node in combinations)
        logger.debug("Granted %d of %d combinations", granted, len(combinations))
        return granted

    def revoke_all(
        self,
        ctx: AuthContext,
        roles: Iterable[RoleSpec],
        principals: Iterable[PrincipalRef],
        nodes: Iterable[NodeRef],
    ) -> int:
        combinations = list(itertools.product(list(roles), list(principals), list(nodes)))
        with self.store.transaction():
            return sum(self.revoke(ctx, role, principal, node) for role, principal, node in combinations)

    def revoke_all_from(self, ctx: AuthContext, principal: PrincipalRef) -> int:
        """Revoke every assignment held by ``principal``."""
        with self.store.transaction():
            assignments = self.store.assignments(principal_ids=[principal_id_of(principal)])
            return sum(self._revoke_assignment(ctx, a) for a in sorted(assignments, key=_sort_key))

    def revoke_all_at(self, ctx: AuthContext, node: NodeRef) -> int:
        """Revoke every assignment made at ``node``."""
        with self.store.transaction():
            assignments = self.store.assignments(node_ids=[node_id_of(node)])
            return sum(self._revoke_assignment(ctx, a) for a in sorted(assignments, key=_sort_key))

    def _revoke_assignment(self, ctx: AuthContext, assignment: Assignment) -> bool:
        return self.revoke(ctx, self.roles.by_id(assignment.role_id), assignment.principal_id, assignment.node_id)

    # ── Queries ──────────────────────────────────────────────────

    def assigned_at(self, node: NodeRef) -> set[Assignment]:
        return self.store.assignments(node_ids=[node_id_of(node)])

    def assigned_to(self, principal: PrincipalRef) -> set[Assignment]:
        return self.store.assignments(principal_ids=[principal_id_of(principal)])

    def is_assigned(
        self,
        role: RoleSpec,
        principal: PrincipalRef,
        node: NodeRef,
        *,
        effective: bool = True,
    ) -> bool:
        """Whether ``principal`` holds ``role`` at ``node``.

        With ``effective`` inherited assignments count; otherwise only a
        real assignment made at ``node`` does.
        """
        ids = ([self._role(role).id], [principal_id_of(principal)], [node_id_of(node)])
        if effective:
            return self.store.has_effective(*ids)
        return self.store.has_assignment(*ids)


def _sort_key(assignment: Assignment) -> tuple[int, int, int]:
    return assignment.node_id, assignment.role_id, assignment.principal_id


__all__ = ["AssignmentStore", "RoleSpec"]
