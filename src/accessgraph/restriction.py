"""Restriction predicates for collection queries.

A ``Restriction`` tells the data layer which securable ids of one entity
type a context may see. It renders as a SQLAlchemy clause over the
caller's id column, and can test ids or filter records in Python.

- ``NullRestriction``: no restriction (global grant or trusted context).
- ``DenyAllRestriction``: no rows (no accepting role held anywhere).
- ``IdRestriction``: an explicit id set (in-memory stores).
- ``SubqueryRestriction``: an unmaterialized id subquery (SQL store).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from operator import attrgetter
from typing import TYPE_CHECKING, Any, Callable, Iterable, TypeVar

import sqlalchemy as sa

if TYPE_CHECKING:
    from .store.sql import SqlStore

_T = TypeVar("_T")

_default_key = attrgetter("securable_id")


class Restriction(ABC):
    """Predicate over the securable ids of one entity type."""

    unrestricted: bool = False

    @abstractmethod
    def clause(self, column: sa.ColumnElement[Any]) -> sa.ColumnElement[bool]:
        """SQL boolean expression restricting ``column`` to allowed ids."""

    @abstractmethod
    def allows(self, securable_id: Any) -> bool: ...

    def apply(self, statement: sa.Select, column: sa.ColumnElement[Any]) -> sa.Select:
        """Add this restriction to ``statement``'s WHERE clause."""
        if self.unrestricted:
            return statement
        return statement.where(self.clause(column))

    def filter(self, records: Iterable[_T], key: Callable[[_T], Any] = _default_key) -> list[_T]:
        """Keep the records whose ``key`` is allowed."""
        return [record for record in records if self.allows(key(record))]


class NullRestriction(Restriction):
    unrestricted = True

    def clause(self, column):
        return sa.true()

    def allows(self, securable_id) -> bool:
        return True

    def __repr__(self) -> str:
        return "NullRestriction()"


class DenyAllRestriction(Restriction):
    def clause(self, column):
        return sa.false()

    def allows(self, securable_id) -> bool:
        return False

    def __repr__(self) -> str:
        return "DenyAllRestriction()"


class IdRestriction(Restriction):
    """Restriction to an explicit set of securable ids."""

    def __init__(self, securable_ids: Iterable[Any]) -> None:
        self.securable_ids = frozenset(str(sid) for sid in securable_ids)

    def clause(self, column):
        if not self.securable_ids:
            return sa.false()
        return column.in_(sorted(self.securable_ids))

    def allows(self, securable_id) -> bool:
        return str(securable_id) in self.securable_ids

    def __repr__(self) -> str:
        return f"IdRestriction({sorted(self.securable_ids)!r})"


class SubqueryRestriction(Restriction):
    """Restriction to the ids produced by a SELECT of one column.

    The subquery is embedded in the caller's statement; the id list is
    never loaded unless ``allows()`` or ``securable_ids()`` is called.
    """

    def __init__(self, statement: sa.Select, store: "SqlStore") -> None:
        self.statement = statement
        self._store = store

    def clause(self, column):
        return column.in_(self.statement)

    def allows(self, securable_id) -> bool:
        return self._store.contains(self.statement, securable_id)

    def securable_ids(self) -> frozenset[str]:
        return frozenset(self._store.fetch_ids(self.statement))

    def __repr__(self) -> str:
        return f"SubqueryRestriction({self.statement})"


__all__ = [
    "DenyAllRestriction",
    "IdRestriction",
    "NullRestriction",
    "Restriction",
    "SubqueryRestriction",
]
