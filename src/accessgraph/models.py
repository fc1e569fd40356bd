"""Value types of the access-control graph.

Provides:
- ``Node``: a securable entity in the inheritance graph.
- ``Principal``: the security identity of a subject (user/group).
- ``Role``: a named permission set with local/global assignability.
- ``Assignment`` / ``EffectiveAssignment``: real grants and their
  inheritance-expanded materialization.

Reserved identifiers:
- ``GLOBAL_NODE_ID``: the root node, implicit ancestor of every node.
- ``ANONYMOUS_PRINCIPAL_ID``: principal used when no subject is logged in.
- ``UNRESTRICTABLE_PRINCIPAL_ID``: bypasses every check; never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Union

GLOBAL_NODE_ID = 0
GLOBAL_SECURABLE_TYPE = "accessgraph.GlobalRecord"
GLOBAL_SECURABLE_ID = "0"

ANONYMOUS_PRINCIPAL_ID = 0
ANONYMOUS_SUBJECT_TYPE = "accessgraph.AnonymousUser"
ANONYMOUS_SUBJECT_ID = "0"

UNRESTRICTABLE_PRINCIPAL_ID = -1


@dataclass(frozen=True)
class Node:
    """A vertex of the inheritance graph wrapping one securable entity.

    Attributes:
        id: Stable node identifier.
        securable_type: Type tag of the wrapped entity.
        securable_id: Identifier of the wrapped entity within its type.
        blocked: When True, nothing granted above this node reaches it
            or its descendants.
    """

    id: int
    securable_type: str
    securable_id: str
    blocked: bool = False

    @property
    def is_global(self) -> bool:
        return self.id == GLOBAL_NODE_ID

    def with_blocked(self, blocked: bool) -> "Node":
        return Node(self.id, self.securable_type, self.securable_id, blocked)


@dataclass(frozen=True)
class Principal:
    """Security identity of a subject."""

    id: int
    subject_type: str
    subject_id: str

    @property
    def is_anonymous(self) -> bool:
        return self.id == ANONYMOUS_PRINCIPAL_ID

    @property
    def is_unrestrictable(self) -> bool:
        return self.id == UNRESTRICTABLE_PRINCIPAL_ID


UNRESTRICTABLE_PRINCIPAL = Principal(
    UNRESTRICTABLE_PRINCIPAL_ID, "accessgraph.UnrestrictableUser", "-1"
)


@dataclass(frozen=True)
class Role:
    """Named collection of permissions.

    A role flagged ``local`` may be assigned on ordinary nodes, a role
    flagged ``global_`` on the global node. A role with neither flag
    cannot be assigned anywhere.
    """

    id: int
    name: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    local: bool = True
    global_: bool = False

    def covers(self, permissions: Iterable[str]) -> bool:
        """True if this role grants every permission in ``permissions``."""
        return self.permissions.issuperset(permissions)

    def assignable_on(self, node_id: int) -> bool:
        if node_id == GLOBAL_NODE_ID:
            return self.global_
        return self.local


@dataclass(frozen=True)
class Assignment:
    """A real grant of ``role_id`` to ``principal_id`` at ``node_id``."""

    role_id: int
    principal_id: int
    node_id: int


@dataclass(frozen=True)
class EffectiveAssignment:
    """A derived tuple: ``principal_id`` holds ``role_id`` at ``node_id``."""

    role_id: int
    principal_id: int
    node_id: int


NodeRef = Union[Node, int]
PrincipalRef = Union[Principal, int]
RoleRef = Union[Role, int]


def node_id_of(node: NodeRef) -> int:
    return node.id if isinstance(node, Node) else int(node)


def principal_id_of(principal: PrincipalRef) -> int:
    return principal.id if isinstance(principal, Principal) else int(principal)


def role_id_of(role: RoleRef) -> int:
    return role.id if isinstance(role, Role) else int(role)


__all__ = [
    "ANONYMOUS_PRINCIPAL_ID",
    "ANONYMOUS_SUBJECT_ID",
    "ANONYMOUS_SUBJECT_TYPE",
    "GLOBAL_NODE_ID",
    "GLOBAL_SECURABLE_ID",
    "GLOBAL_SECURABLE_TYPE",
    "UNRESTRICTABLE_PRINCIPAL",
    "UNRESTRICTABLE_PRINCIPAL_ID",
    "Assignment",
    "EffectiveAssignment",
    "Node",
    "NodeRef",
    "Principal",
    "PrincipalRef",
    "Role",
    "RoleRef",
    "node_id_of",
    "principal_id_of",
    "role_id_of",
]
