"""Per-call authorization context.

``AuthContext`` is the explicit value every resolver and mutation call
receives: which principals are acting, and whether the call runs as a
trusted system actor. It is immutable; ``trusted()`` returns a copy, so a
trust override never outlives the call that asked for it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

from .models import (
    ANONYMOUS_PRINCIPAL_ID,
    UNRESTRICTABLE_PRINCIPAL_ID,
    Principal,
    PrincipalRef,
    principal_id_of,
)


@dataclass(frozen=True)
class AuthContext:
    """Principals acting in a call plus the trust override.

    Attributes:
        principal_ids: Ids of the acting principals. Access is granted when
            any of them holds a sufficient role.
        is_trusted: Skip every check (internal bookkeeping).
    """

    principal_ids: frozenset[int] = frozenset()
    is_trusted: bool = False

    @classmethod
    def of(cls, principals: Iterable[PrincipalRef]) -> "AuthContext":
        return cls(principal_ids=frozenset(principal_id_of(p) for p in principals))

    @classmethod
    def anonymous(cls) -> "AuthContext":
        return cls(principal_ids=frozenset({ANONYMOUS_PRINCIPAL_ID}))

    @classmethod
    def unrestricted(cls) -> "AuthContext":
        return cls(principal_ids=frozenset({UNRESTRICTABLE_PRINCIPAL_ID}))

    @property
    def unrestricted_access(self) -> bool:
        """True when no check applies to this context."""
        return self.is_trusted or UNRESTRICTABLE_PRINCIPAL_ID in self.principal_ids

    def trusted(self) -> "AuthContext":
        return replace(self, is_trusted=True)

    def with_principal(self, principal: Principal | int) -> "AuthContext":
        return replace(self, principal_ids=self.principal_ids | {principal_id_of(principal)})


__all__ = ["AuthContext"]
