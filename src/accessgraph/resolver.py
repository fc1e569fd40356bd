"""Permission checks and collection restriction.

A role counts toward a requirement only when its permission set covers
the whole required set. Grants at the global node apply everywhere and
are checked first. The anonymous principal takes part in every check, so
anything granted to it is granted to everyone.
"""

from __future__ import annotations

import logging
from typing import Iterable, Union

from .config import AccessControlConfig, RestrictionStrategy
from .context import AuthContext
from .exceptions import Unauthorized
from .logging import log_unauthorized, log_unregistered_permission
from .models import ANONYMOUS_PRINCIPAL_ID, GLOBAL_NODE_ID, Node, NodeRef, Role, node_id_of
from .registry import RoleRegistry
from .restriction import DenyAllRestriction, NullRestriction, Restriction
from .store import Store

logger = logging.getLogger(__name__)

Nodes = Union[NodeRef, Iterable[NodeRef]]


def node_ids_of(nodes: Nodes) -> set[int]:
    if isinstance(nodes, (Node, int)):
        return {node_id_of(nodes)}
    return {node_id_of(node) for node in nodes}


class PermissionResolver:
    """Answers ``can`` questions and builds restriction predicates."""

    def __init__(
        self,
        store: Store,
        roles: RoleRegistry,
        config: AccessControlConfig | None = None,
    ) -> None:
        self.store = store
        self.roles = roles
        self.config = config or AccessControlConfig()

    def principal_ids(self, ctx: AuthContext) -> set[int]:
        return set(ctx.principal_ids) | {ANONYMOUS_PRINCIPAL_ID}

    def accepting_roles(self, permissions: Iterable[str]) -> frozenset[Role]:
        """Roles that satisfy every permission in ``permissions``."""
        required = frozenset(permissions)
        for name in required - self.roles.permissions.all():
            log_unregistered_permission(name)
        return self.roles.roles_for_all_permissions(required)

    # ── Checks ───────────────────────────────────────────────────

    def can(self, ctx: AuthContext, permissions: Iterable[str], nodes: Nodes) -> bool:
        """True if the context holds ``permissions`` on every node in ``nodes``."""
        required = frozenset(permissions)
        if ctx.unrestricted_access or not required:
            return True
        accepting = self.accepting_roles(required)
        if not accepting:
            return False
        role_ids = [role.id for role in accepting]
        principal_ids = self.principal_ids(ctx)

        if self.store.has_effective(role_ids, principal_ids, [GLOBAL_NODE_ID]):
            return True
        node_ids = node_ids_of(nodes) - {GLOBAL_NODE_ID}
        if not node_ids:
            return False
        return all(self.store.has_effective(role_ids, principal_ids, [node_id]) for node_id in node_ids)

    def verify(self, ctx: AuthContext, permissions: Iterable[str], nodes: Nodes) -> None:
        """Like ``can``, but raise ``Unauthorized`` (and log why) when denied."""
        required = frozenset(permissions)
        if self.can(ctx, required, nodes):
            return
        node_ids = node_ids_of(nodes)
        held = self.roles_at(ctx, node_ids)
        missing = required - frozenset().union(*(role.permissions for role in held))
        # Every name is held by some role, just not all by one.
        if not missing:
            missing = required
        role_names = {role.name for role in held}
        principal_ids = self.principal_ids(ctx)
        log_unauthorized(missing, role_names, sorted(node_ids), principal_ids)
        raise Unauthorized(missing=missing, roles=role_names, nodes=node_ids, principals=principal_ids)

    def roles_at(self, ctx: AuthContext, nodes: Nodes) -> frozenset[Role]:
        """Roles the context holds on any of ``nodes``, global grants included."""
        node_ids = node_ids_of(nodes) | {GLOBAL_NODE_ID}
        tuples = self.store.effective(principal_ids=self.principal_ids(ctx), node_ids=node_ids)
        role_ids = {e.role_id for e in tuples}
        return frozenset(role for role in self.roles.all() if role.id in role_ids)

    def has_role_at(self, ctx: AuthContext, role: Role, nodes: Nodes) -> bool:
        return role in self.roles_at(ctx, nodes)

    def permissions_at(self, ctx: AuthContext, nodes: Nodes) -> frozenset[str]:
        return frozenset().union(*(role.permissions for role in self.roles_at(ctx, nodes)))

    # ── Restriction ──────────────────────────────────────────────

    def restriction(
        self,
        ctx: AuthContext,
        securable_type: str,
        permissions: Iterable[str],
        strategy: RestrictionStrategy | None = None,
    ) -> Restriction:
        """Predicate limiting ``securable_type`` records to those ``ctx`` may see."""
        required = frozenset(permissions)
        if ctx.unrestricted_access or not required:
            return NullRestriction()
        accepting = self.accepting_roles(required)
        if not accepting:
            return DenyAllRestriction()
        role_ids = sorted(role.id for role in accepting)
        principal_ids = self.principal_ids(ctx)

        if self.store.has_assignment(role_ids, principal_ids, [GLOBAL_NODE_ID]):
            return NullRestriction()
        local = self.store.assignments(role_ids, principal_ids)
        if not any(a.node_id != GLOBAL_NODE_ID for a in local):
            return DenyAllRestriction()
        strategy = strategy or self.config.restriction_strategy
        logger.debug(
            "Restricting %s for roles %s and principals %s (%s)",
            securable_type,
            role_ids,
            sorted(principal_ids),
            strategy.value,
        )
        return self.store.restrict(securable_type, role_ids, principal_ids, strategy)


__all__ = ["PermissionResolver", "node_ids_of"]
