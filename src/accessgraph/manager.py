"""Facade wiring securables, principals and nodes to the engine.

``AccessManager`` owns one instance of each component and translates
application entities (``Securable`` objects, subject keys) into nodes and
principals. It is the entry point a data layer calls from its create,
update and destroy hooks and from its collection queries.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .assignments import AssignmentStore, RoleSpec
from .config import AccessControlConfig
from .context import AuthContext
from .exceptions import ConfigurationError, NotFoundError
from .graph import NodeGraph
from .logging import get_access_logger
from .models import (
    ANONYMOUS_PRINCIPAL_ID,
    ANONYMOUS_SUBJECT_ID,
    ANONYMOUS_SUBJECT_TYPE,
    GLOBAL_NODE_ID,
    UNRESTRICTABLE_PRINCIPAL_ID,
    Node,
    Principal,
    PrincipalRef,
    principal_id_of,
)
from .registry import CHANGE_INHERITANCE_BLOCKING, PermissionRegistry, RoleRegistry
from .requirements import PermissionRequirements
from .resolver import PermissionResolver
from .restriction import Restriction
from .securable import Securable, SecurableProvider, securable_key
from .store import Store, create_store

logger = logging.getLogger(__name__)

# Operations checked on parents (create/attach) and on the record (destroy/detach).
CREATE = "create"
DESTROY = "destroy"

SecurableRef = Any  # Securable, Node or node id


class AccessManager:
    """One access-control engine bound to one store."""

    def __init__(
        self,
        store: Store | None = None,
        config: AccessControlConfig | None = None,
        *,
        permissions: PermissionRegistry | None = None,
        provider: SecurableProvider | None = None,
    ) -> None:
        self.config = config or AccessControlConfig()
        self.store = store or create_store(self.config)
        self.permissions = permissions or PermissionRegistry()
        self.roles = RoleRegistry(self.store, self.permissions)
        self.requirements = PermissionRequirements(self.permissions, self.config)
        self.provider = provider or SecurableProvider()
        self.graph = NodeGraph(self.store)
        self.resolver = PermissionResolver(self.store, self.roles, self.config)
        self.assignments = AssignmentStore(self.store, self.graph, self.roles, self.resolver, self.config)
        self.bootstrap()

    def bootstrap(self) -> None:
        """Create the global node and the anonymous principal if missing."""
        with self.store.transaction():
            self.graph.ensure_global_node()
            if self.store.get_principal(ANONYMOUS_PRINCIPAL_ID) is None:
                self.store.insert_principal(
                    ANONYMOUS_SUBJECT_TYPE, ANONYMOUS_SUBJECT_ID, principal_id=ANONYMOUS_PRINCIPAL_ID
                )
                logger.info("Created anonymous principal")

    # ── Principals ───────────────────────────────────────────────

    def principal_for(self, subject_type: str, subject_id: Any) -> Principal:
        """The principal of a subject, created on first use."""
        with self.store.transaction():
            principal = self.store.find_principal(subject_type, str(subject_id))
            if principal is None:
                principal = self.store.insert_principal(subject_type, str(subject_id))
                logger.debug("Created principal %s for %s %s", principal.id, subject_type, subject_id)
        return principal

    def destroy_principal(self, principal: PrincipalRef) -> None:
        """Delete a principal together with all of its assignments."""
        principal_id = principal_id_of(principal)
        if principal_id == ANONYMOUS_PRINCIPAL_ID:
            raise ConfigurationError("The anonymous principal cannot be destroyed")
        self.store.delete_principal(principal_id)
        logger.debug("Destroyed principal %s", principal_id)

    def context_for(self, *subjects: Principal | tuple[str, Any]) -> AuthContext:
        """Context acting as ``subjects``.

        Subjects are principals or ``(subject_type, subject_id)`` keys. With
        no subjects the context is anonymous, or unrestricted when the
        anonymous principal is disabled.
        """
        if not subjects:
            return AuthContext.anonymous() if self.config.use_anonymous else AuthContext.unrestricted()
        principals = [
            subject if isinstance(subject, Principal) else self.principal_for(*subject)
            for subject in subjects
        ]
        return AuthContext.of(principals)

    # ── Nodes ────────────────────────────────────────────────────

    def node_for(self, securable: SecurableRef) -> Node:
        """The node of a securable, node or node id."""
        if isinstance(securable, (Node, int)):
            return self.graph.get(securable)
        securable_type, securable_id = securable_key(securable)
        node = self.graph.find(securable_type, securable_id)
        if node is None:
            raise NotFoundError(
                f"No node for {securable_type} {securable_id}",
                securable_type=securable_type,
                securable_id=securable_id,
            )
        return node

    def global_node(self) -> Node:
        return self.graph.global_node()

    def securable_of(self, node: Node | int) -> Any:
        return self.provider.securable_of(self.graph.get(node))

    def parent_nodes_of(self, securable: Securable) -> list[Node]:
        """Nodes of the declared parents; the global node when none."""
        parents = [self.node_for(parent) for parent in securable.declared_parents()]
        return parents or [self.graph.global_node()]

    def _check_nodes(self, securable: SecurableRef) -> list[Node]:
        # An unsaved record has no node; its parents stand in for it.
        if isinstance(securable, Securable) and not securable.is_persisted():
            return self.parent_nodes_of(securable)
        return [self.node_for(securable)]

    def _required(self, securable_type: str, operation: str) -> frozenset[str]:
        return self.requirements.required(securable_type, operation, default=())

    def create_node(self, ctx: AuthContext, securable: Securable, *, blocked: bool = False) -> Node:
        """Create the node of a new securable.

        Requires the ``create`` permissions of its type on every parent.
        The acting principals then receive the configured default roles on
        the new node.
        """
        securable_type, securable_id = securable_key(securable)
        with self.store.transaction():
            parents = self.parent_nodes_of(securable)
            self.resolver.verify(ctx, self._required(securable_type, CREATE), parents)
            node = self.graph.create_node(securable_type, securable_id, parents, blocked=blocked)
            self._grant_default_roles(ctx, node)
        get_access_logger(__name__, ctx).debug("Created node %s for %s %s", node.id, securable_type, securable_id)
        return node

    def _grant_default_roles(self, ctx: AuthContext, node: Node) -> None:
        roles = self.roles.with_names(self.config.default_roles_on_create)
        principal_ids = ctx.principal_ids - {ANONYMOUS_PRINCIPAL_ID, UNRESTRICTABLE_PRINCIPAL_ID}
        if roles and principal_ids:
            self.assignments.grant_all(ctx.trusted(), roles, sorted(principal_ids), [node])

    def sync_parents(self, ctx: AuthContext, securable: Securable) -> tuple[set[int], set[int]]:
        """Make the stored parents of ``securable`` match its declared ones.

        New parents require the ``create`` permissions of the type, removed
        parents the ``destroy`` permissions. Returns the added and removed
        parent ids.
        """
        securable_type, _ = securable_key(securable)
        with self.store.transaction():
            node = self.node_for(securable)
            declared = {parent.id for parent in self.parent_nodes_of(securable)}
            current = self.graph.parents_of(node)
            added = declared - current - {GLOBAL_NODE_ID}
            removed = current - declared - {GLOBAL_NODE_ID}
            if added:
                self.resolver.verify(ctx, self._required(securable_type, CREATE), added)
            if removed:
                self.resolver.verify(ctx, self._required(securable_type, DESTROY), removed)
            for parent_id in sorted(added):
                self.graph.add_parent(node, parent_id)
            for parent_id in sorted(removed):
                self.graph.remove_parent(node, parent_id)
        if added or removed:
            get_access_logger(__name__, ctx).debug(
                "Synced parents of node %s: added %s, removed %s", node.id, sorted(added), sorted(removed)
            )
        return added, removed

    def destroy_node(self, ctx: AuthContext, securable: SecurableRef) -> None:
        """Delete the node of ``securable``; requires its ``destroy`` permissions."""
        with self.store.transaction():
            node = self.node_for(securable)
            self.resolver.verify(ctx, self._required(node.securable_type, DESTROY), node)
            self.graph.destroy_node(node)

    def set_blocked(self, ctx: AuthContext, securable: SecurableRef, blocked: bool = True) -> Node:
        """Block or unblock inheritance; requires ``change_inheritance_blocking``."""
        with self.store.transaction():
            node = self.node_for(securable)
            self.resolver.verify(ctx, {CHANGE_INHERITANCE_BLOCKING}, node)
            return self.graph.set_blocked(node, blocked)

    # ── Checks ───────────────────────────────────────────────────

    def can(self, ctx: AuthContext, permissions: Iterable[str], securable: SecurableRef) -> bool:
        return self.resolver.can(ctx, permissions, self._check_nodes(securable))

    def verify(self, ctx: AuthContext, permissions: Iterable[str], securable: SecurableRef) -> None:
        self.resolver.verify(ctx, permissions, self._check_nodes(securable))

    def can_perform(self, ctx: AuthContext, operation: str, securable: Securable) -> bool:
        """Check the permissions declared for ``operation`` on the securable's type."""
        securable_type, _ = securable_key(securable)
        return self.can(ctx, self.requirements.required(securable_type, operation), securable)

    def verify_perform(self, ctx: AuthContext, operation: str, securable: Securable) -> None:
        securable_type, _ = securable_key(securable)
        self.verify(ctx, self.requirements.required(securable_type, operation), securable)

    def restrict(self, ctx: AuthContext, securable_type: str, operation: str = "list") -> Restriction:
        """Restriction for listing ``securable_type`` records."""
        permissions = self.requirements.required(securable_type, operation)
        return self.resolver.restriction(ctx, securable_type, permissions)

    # ── Assignments ──────────────────────────────────────────────

    def grant(self, ctx: AuthContext, role: RoleSpec, principal: PrincipalRef, securable: SecurableRef) -> bool:
        return self.assignments.grant(ctx, role, principal, self.node_for(securable))

    def revoke(self, ctx: AuthContext, role: RoleSpec, principal: PrincipalRef, securable: SecurableRef) -> bool:
        return self.assignments.revoke(ctx, role, principal, self.node_for(securable))

    def roles_at(self, ctx: AuthContext, securable: SecurableRef) -> frozenset[str]:
        """Names of the roles the context holds on the securable."""
        return frozenset(role.name for role in self.resolver.roles_at(ctx, self._check_nodes(securable)))

    def permissions_at(self, ctx: AuthContext, securable: SecurableRef) -> frozenset[str]:
        return self.resolver.permissions_at(ctx, self._check_nodes(securable))


__all__ = ["AccessManager", "CREATE", "DESTROY"]
