"""Exception hierarchy for accessgraph.

All errors inherit from AccessControlError. This module provides:
- Base exception hierarchy with stable error codes
- ErrorRegistry mapping codes back to exception classes

Taxonomy:
    StructuralError     : graph mutation would break the DAG/global-node rules
    ConfigurationError  : caller-fixable setup problems (unknown names, flags)
    Unauthorized        : a verify call found insufficient permission
    StorageError        : backend failure
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, TypeVar, cast

__all__ = [
    # Base hierarchy
    "AccessControlError",
    "ConfigurationError",
    "InvalidRoleAssignment",
    "NotFoundError",
    "MissingPermissionDeclaration",
    "UnrecognizedSecurable",
    "StructuralError",
    "CycleError",
    "ParentError",
    "NoGlobalNode",
    "Unauthorized",
    "StorageError",
    # Registry
    "ErrorRegistry",
    "error_registry",
    "register_error",
]


# ---- Exception Hierarchy ----------------------------------------------------


class AccessControlError(Exception):
    """Base exception for accessgraph.

    Attributes:
        code: Stable error code string for protocol mapping (e.g. "CYCLE_ERROR").
        message: Human-readable error description.
        details: Additional context as keyword arguments.
    """

    code: str = "INTERNAL_ERROR"
    message: str = "An internal access-control error occurred"

    def __init__(self, message: str | None = None, code: str | None = None, **kwargs: Any) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = kwargs
        super().__init__(self.message)


class ConfigurationError(AccessControlError):
    """Invalid or missing configuration."""

    code: str = "CONFIGURATION_ERROR"


class InvalidRoleAssignment(ConfigurationError):
    """Role flags do not allow assignment on the requested node."""

    code: str = "INVALID_ROLE_ASSIGNMENT"
    message: str = "Role cannot be assigned on this node"


class NotFoundError(ConfigurationError):
    """Unknown permission, role, node or principal."""

    code: str = "NOT_FOUND"
    message: str = "Not found"


class MissingPermissionDeclaration(ConfigurationError):
    """No permission requirement declared for an entity type and operation."""

    code: str = "MISSING_PERMISSION_DECLARATION"


class UnrecognizedSecurable(ConfigurationError):
    """Object does not implement the Securable interface."""

    code: str = "UNRECOGNIZED_SECURABLE"


class StructuralError(AccessControlError):
    """Graph mutation would violate DAG or global-node invariants."""

    code: str = "STRUCTURAL_ERROR"


class CycleError(StructuralError):
    """Adding the edge would create a cycle."""

    code: str = "CYCLE_ERROR"
    message: str = "Edge would create a cycle"


class ParentError(StructuralError):
    """Illegal attachment involving the global node."""

    code: str = "PARENT_ERROR"
    message: str = "Invalid parent"


class NoGlobalNode(StructuralError):
    """The store has not been bootstrapped with a global node."""

    code: str = "NO_GLOBAL_NODE"
    message: str = "Global node does not exist"


class Unauthorized(AccessControlError):
    """Insufficient permission.

    Attributes (in ``details``):
        missing: Permission names not covered by any held role.
        roles: Names of the roles the principals hold on the nodes.
        nodes: Node ids examined.
        principals: Principal ids examined.
    """

    code: str = "PERMISSION_DENIED"
    message: str = "Unauthorized"

    def __init__(
        self,
        message: str | None = None,
        *,
        missing: Iterable[str] = (),
        roles: Iterable[str] = (),
        nodes: Iterable[int] = (),
        principals: Iterable[int] = (),
        **kwargs: Any,
    ) -> None:
        missing = tuple(sorted(missing))
        nodes = tuple(sorted(nodes))
        if message is None and missing and nodes:
            message = "Missing {} on {}".format(
                ", ".join(missing),
                ", ".join(f"node {node_id}" for node_id in nodes),
            )
        super().__init__(
            message,
            missing=missing,
            roles=tuple(sorted(roles)),
            nodes=nodes,
            principals=tuple(sorted(principals)),
            **kwargs,
        )

    @property
    def missing(self) -> tuple[str, ...]:
        return self.details["missing"]


class StorageError(AccessControlError):
    """Backend read/write failure."""

    code: str = "STORAGE_ERROR"


# ---- Error Registry for Protocol Mapping ------------------------------------

_E = TypeVar("_E", bound=type[AccessControlError])


class ErrorRegistry:
    """Registry mapping stable error codes to exception classes."""

    def __init__(self) -> None:
        self._errors: dict[str, type[AccessControlError]] = {}

    def register(self, code: str, error_cls: type[AccessControlError]) -> None:
        self._errors[code] = error_cls

    def get(self, code: str) -> type[AccessControlError] | None:
        return self._errors.get(code)

    def all(self) -> dict[str, type[AccessControlError]]:
        return dict(self._errors)


error_registry = ErrorRegistry()


def register_error(code: str) -> Callable[[_E], _E]:
    """Decorator to register a custom error type.

    Usage:
        @register_error("QUOTA_EXCEEDED")
        class QuotaExceeded(AccessControlError):
            code = "QUOTA_EXCEEDED"
    """

    def decorator(cls: _E) -> _E:
        error_registry.register(code, cls)
        return cls

    return cast(Callable[[_E], _E], decorator)


for _cls in (
    AccessControlError,
    ConfigurationError,
    InvalidRoleAssignment,
    NotFoundError,
    MissingPermissionDeclaration,
    UnrecognizedSecurable,
    StructuralError,
    CycleError,
    ParentError,
    NoGlobalNode,
    Unauthorized,
    StorageError,
):
    error_registry.register(_cls.code, _cls)
