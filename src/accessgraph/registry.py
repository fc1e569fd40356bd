"""Permission and role registries.

Provides:
- ``PermissionRegistry``: known permission names with metadata.
- ``RoleRegistry``: roles (named permission sets) persisted in a store.

Both are explicit objects built at startup and passed to the components
that need them; nothing is discovered by reflection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .exceptions import NotFoundError
from .logging import log_unregistered_permission
from .models import Role
from .store import Store

logger = logging.getLogger(__name__)


# Permissions the engine itself checks; always registered.
GRANT_ROLES = "grant_roles"
SHARE_OWN_ROLES = "share_own_roles"
CHANGE_INHERITANCE_BLOCKING = "change_inheritance_blocking"

BUILTIN_PERMISSIONS = (GRANT_ROLES, SHARE_OWN_ROLES, CHANGE_INHERITANCE_BLOCKING)


@dataclass(frozen=True)
class Permission:
    """A registered permission name and its metadata."""

    name: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


class PermissionRegistry:
    """Set of known permission names.

    Registration is idempotent. Registering a name again with metadata
    replaces its metadata; registering without metadata keeps it.
    """

    def __init__(self) -> None:
        self._permissions: dict[str, dict[str, Any]] = {}
        self.register(*BUILTIN_PERMISSIONS)

    def register(self, *names: str | Iterable[str], **metadata: Any) -> None:
        for name in _flatten(names):
            if metadata or name not in self._permissions:
                self._permissions[name] = dict(metadata)

    def get(self, name: str) -> Permission:
        try:
            return Permission(name, dict(self._permissions[name]))
        except KeyError:
            raise NotFoundError(f"Permission {name!r} is not registered", permission=name)

    def metadata(self, name: str) -> dict[str, Any]:
        return self.get(name).metadata  # type: ignore[return-value]

    def __contains__(self, name: object) -> bool:
        return name in self._permissions

    def all(self) -> frozenset[str]:
        return frozenset(self._permissions)

    def query(self, **criteria: Any) -> frozenset[str]:
        """Names whose metadata matches every criterion.

        A criterion matches when the metadata value equals it, or is a
        collection containing it.
        """
        if not criteria:
            return self.all()
        return frozenset(
            name
            for name, metadata in self._permissions.items()
            if all(_metadata_matches(metadata.get(key), value) for key, value in criteria.items())
        )

    def resolve(self, names: Iterable[str], *, strict: bool = True) -> frozenset[str]:
        """Validate permission names.

        Unknown names raise ``NotFoundError`` when ``strict``; otherwise
        they are logged and dropped.
        """
        known = set()
        for name in names:
            if name in self._permissions:
                known.add(name)
            elif strict:
                raise NotFoundError(f"Permission {name!r} is not registered", permission=name)
            else:
                log_unregistered_permission(name)
        return frozenset(known)


class RoleRegistry:
    """Roles persisted in a store.

    Lookups read the store every time, inside the caller's transaction
    when one is open, so a role from a rolled-back unit is never served.
    """

    def __init__(self, store: Store, permissions: PermissionRegistry) -> None:
        self._store = store
        self._permissions = permissions

    @property
    def permissions(self) -> PermissionRegistry:
        return self._permissions

    def _roles(self) -> dict[str, Role]:
        return {role.name: role for role in self._store.roles()}

    def define(
        self,
        name: str,
        permissions: Iterable[str],
        *,
        local: bool = True,
        global_: bool = False,
    ) -> Role:
        """Create the role, or replace its permissions and flags."""
        permission_set = self._permissions.resolve(permissions)
        with self._store.transaction():
            existing = self.find(name)
            if existing is None:
                role = self._store.insert_role(name, permission_set, local=local, global_=global_)
                logger.info("Defined role %s with %d permissions", name, len(permission_set))
            else:
                role = self._store.update_role(Role(existing.id, name, permission_set, local, global_))
                logger.info("Redefined role %s with %d permissions", name, len(permission_set))
        return role

    def add_permissions(self, name: str, permissions: Iterable[str]) -> frozenset[str]:
        """Add permissions to a role; returns the ones that were new."""
        role = self.get(name)
        added = self._permissions.resolve(permissions) - role.permissions
        if added:
            self.define(name, role.permissions | added, local=role.local, global_=role.global_)
        return added

    def remove_permissions(self, name: str, permissions: Iterable[str]) -> frozenset[str]:
        """Remove permissions from a role; returns the ones it had."""
        role = self.get(name)
        removed = frozenset(permissions) & role.permissions
        if removed:
            self.define(name, role.permissions - removed, local=role.local, global_=role.global_)
        return removed

    def remove(self, name: str) -> None:
        """Delete a role with every assignment and effective tuple of it."""
        with self._store.transaction():
            role = self.get(name)
            self._store.delete_role(role.id)
        logger.info("Removed role %s", name)

    def find(self, name: str) -> Role | None:
        return self._roles().get(name)

    def get(self, name: str) -> Role:
        role = self.find(name)
        if role is None:
            raise NotFoundError(f"Role {name!r} not found", role=name)
        return role

    def by_id(self, role_id: int) -> Role:
        for role in self._roles().values():
            if role.id == role_id:
                return role
        raise NotFoundError(f"Role {role_id} not found", role_id=role_id)

    def with_names(self, names: Iterable[str]) -> list[Role]:
        """Roles for the known names; unknown names are skipped."""
        roles = self._roles()
        return [roles[name] for name in names if name in roles]

    def all(self) -> list[Role]:
        return sorted(self._roles().values(), key=lambda role: role.id)

    def roles_for_all_permissions(self, permissions: Iterable[str]) -> frozenset[Role]:
        """Roles whose permission set is a superset of ``permissions``."""
        required = frozenset(permissions)
        return frozenset(role for role in self._roles().values() if role.covers(required))

    def roles_for_any_permission(self, permissions: Iterable[str]) -> frozenset[Role]:
        wanted = frozenset(permissions)
        return frozenset(role for role in self._roles().values() if role.permissions & wanted)


def _flatten(items: Iterable[str | Iterable[str]]) -> list[str]:
    names: list[str] = []
    for item in items:
        if isinstance(item, str):
            names.append(item)
        else:
            names.extend(item)
    return names


def _metadata_matches(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, (set, frozenset, list, tuple)):
        return expected in actual
    return False


__all__ = [
    "BUILTIN_PERMISSIONS",
    "CHANGE_INHERITANCE_BLOCKING",
    "GRANT_ROLES",
    "SHARE_OWN_ROLES",
    "Permission",
    "PermissionRegistry",
    "RoleRegistry",
]
