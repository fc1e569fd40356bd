"""Permission requirements per (entity type, operation).

Call sites ask ``PermissionRequirements.required(type, operation)`` for the
permission set to check; declared sets win, reads fall back to the
configured defaults, anything else undeclared is an error.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .config import AccessControlConfig
from .exceptions import MissingPermissionDeclaration
from .registry import PermissionRegistry

logger = logging.getLogger(__name__)

# Operations answered by the configured default sets when undeclared.
QUERY_OPERATIONS = frozenset({"list", "query"})
VIEW_OPERATIONS = frozenset({"view", "show", "read"})


class PermissionRequirements:
    """Declared permission sets keyed by securable type and operation."""

    def __init__(self, permissions: PermissionRegistry, config: AccessControlConfig | None = None):
        self._permissions = permissions
        self._config = config or AccessControlConfig()
        self._declared: dict[tuple[str, str], frozenset[str]] = {}
        self._permissions.register(*self._config.default_query_permissions)
        self._permissions.register(*self._config.default_view_permissions)

    def declare(self, securable_type: str, operation: str, permissions: Iterable[str]) -> frozenset[str]:
        """Require ``permissions`` for ``operation`` on ``securable_type``.

        Declaring again adds to the existing set. Each permission is
        registered with a ``protects`` metadata entry naming the pair.
        """
        names = frozenset(permissions)
        key = (securable_type, operation)
        self._declared[key] = self._declared.get(key, frozenset()) | names
        target = f"{securable_type}#{operation}"
        for name in names:
            protects = set()
            if name in self._permissions:
                protects = set(self._permissions.metadata(name).get("protects", ()))
            self._permissions.register(name, protects=frozenset(protects | {target}))
        logger.debug("Declared %s for %s", sorted(names), target)
        return self._declared[key]

    def is_declared(self, securable_type: str, operation: str) -> bool:
        return (securable_type, operation) in self._declared

    def required(
        self,
        securable_type: str,
        operation: str,
        default: Iterable[str] | None = None,
    ) -> frozenset[str]:
        """Permissions required for ``operation`` on ``securable_type``.

        Undeclared list/query and view/show/read operations use the
        configured defaults; other undeclared operations use ``default``,
        or raise ``MissingPermissionDeclaration`` without one.
        """
        declared = self._declared.get((securable_type, operation))
        if declared is not None:
            return declared
        if operation in QUERY_OPERATIONS:
            return frozenset(self._config.default_query_permissions)
        if operation in VIEW_OPERATIONS:
            return frozenset(self._config.default_view_permissions)
        if default is not None:
            return frozenset(default)
        raise MissingPermissionDeclaration(
            f"No permissions declared for {operation!r} on {securable_type}",
            securable_type=securable_type,
            operation=operation,
        )

    def declarations(self) -> dict[tuple[str, str], frozenset[str]]:
        return dict(self._declared)


__all__ = ["PermissionRequirements", "QUERY_OPERATIONS", "VIEW_OPERATIONS"]
