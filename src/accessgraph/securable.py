"""Securable entities and how the engine reaches them.

The graph never depends on concrete application classes. An entity takes
part in access control by implementing ``Securable``; a
``SecurableProvider`` maps ``(type, id)`` back to entities through loaders
registered per type.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable

from .exceptions import NotFoundError, UnrecognizedSecurable
from .models import GLOBAL_SECURABLE_ID, GLOBAL_SECURABLE_TYPE, Node

logger = logging.getLogger(__name__)

Loader = Callable[[str], Any]


class Securable(ABC):
    """Capability of an application entity guarded by the engine."""

    @property
    @abstractmethod
    def securable_type(self) -> str:
        """Type tag shared by every entity of this kind."""

    @property
    @abstractmethod
    def securable_id(self) -> str:
        """Identifier of this entity within its type."""

    def declared_parents(self) -> Iterable["Securable"]:
        """Entities this one inherits permissions from.

        Empty means the global node is the only parent.
        """
        return ()

    def is_persisted(self) -> bool:
        """False for entities that do not exist yet (checked via parents)."""
        return True


class GlobalRecord(Securable):
    """The entity wrapped by the global node."""

    securable_type = GLOBAL_SECURABLE_TYPE  # type: ignore[assignment]
    securable_id = GLOBAL_SECURABLE_ID  # type: ignore[assignment]

    def __eq__(self, other: object) -> bool:
        return isinstance(other, GlobalRecord)

    def __hash__(self) -> int:
        return hash(GLOBAL_SECURABLE_TYPE)

    def __repr__(self) -> str:
        return "GlobalRecord()"


GLOBAL_RECORD = GlobalRecord()


def securable_key(securable: Any) -> tuple[str, str]:
    """``(securable_type, securable_id)`` of an entity.

    Raises:
        UnrecognizedSecurable: ``securable`` does not implement Securable.
    """
    if not isinstance(securable, Securable):
        raise UnrecognizedSecurable(
            f"{type(securable).__name__} is not a Securable",
            object_type=type(securable).__name__,
        )
    return securable.securable_type, str(securable.securable_id)


class SecurableProvider:
    """Loads securable entities by type tag and id."""

    def __init__(self) -> None:
        self._loaders: dict[str, Loader] = {GLOBAL_SECURABLE_TYPE: lambda _id: GLOBAL_RECORD}

    def register(self, securable_type: str, loader: Loader) -> None:
        """Use ``loader(securable_id)`` to load entities of ``securable_type``.

        The loader returns None when the entity does not exist.
        """
        self._loaders[securable_type] = loader

    def __contains__(self, securable_type: object) -> bool:
        return securable_type in self._loaders

    def load(self, securable_type: str, securable_id: str) -> Any:
        loader = self._loaders.get(securable_type)
        if loader is None:
            raise UnrecognizedSecurable(
                f"No loader registered for {securable_type}",
                securable_type=securable_type,
            )
        securable = loader(securable_id)
        if securable is None:
            raise NotFoundError(
                f"{securable_type} {securable_id} not found",
                securable_type=securable_type,
                securable_id=securable_id,
            )
        return securable

    def securable_of(self, node: Node) -> Any:
        return self.load(node.securable_type, node.securable_id)


__all__ = [
    "GLOBAL_RECORD",
    "GlobalRecord",
    "Loader",
    "Securable",
    "SecurableProvider",
    "securable_key",
]
