from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional

from ..errors import ProviderError


class ResourceHandler(ABC):
    """CRUD surface for a single resource kind."""

    kind = "generic"
    # Attributes that can change without replacing the resource; "*" allows all.
    updatable: frozenset[str] = frozenset()
    # Attributes accepted on create that the provider never reports back.
    write_only: frozenset[str] = frozenset()

    def can_update(self, changed: Iterable[str]) -> bool:
        if "*" in self.updatable:
            return True
        return all(key in self.updatable for key in changed)

    @abstractmethod
    def read(self, name: str) -> Optional[dict[str, Any]]:
        """Return current attributes for ``name`` or ``None`` when absent."""

    @abstractmethod
    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        """Create ``name`` and return the attributes reported by the provider."""

    def normalize(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        """Return ``attributes`` in the shape ``read`` reports them."""
        return dict(attributes)

    @abstractmethod
    def update(
        self,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        *,
        removed: Iterable[str] = (),
    ) -> dict[str, Any]:
        """Change ``name`` in place and return its new attributes.

        ``removed`` names attributes an earlier apply set that are no longer declared.
        """

    @abstractmethod
    def delete(self, name: str, current: Mapping[str, Any]) -> None:
        """Remove ``name``."""


class Provider:
    """Dispatches provider calls to the handler registered for each kind."""

    name = "provider"

    def __init__(
        self,
        handlers: Mapping[str, ResourceHandler],
        *,
        default: Optional[ResourceHandler] = None,
    ):
        self.handlers = dict(handlers)
        self.default = default

    def handler_for(self, kind: str) -> ResourceHandler:
        handler = self.handlers.get(kind, self.default)
        if handler is None:
            raise ProviderError(kind, f"provider '{self.name}' does not support kind '{kind}'")
        return handler

    def read(self, kind: str, name: str) -> Optional[dict[str, Any]]:
        return self.handler_for(kind).read(name)

    def create(self, kind: str, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        return self.handler_for(kind).create(name, attributes)

    def update(
        self,
        kind: str,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        *,
        removed: Iterable[str] = (),
    ) -> dict[str, Any]:
        return self.handler_for(kind).update(name, current, attributes, removed=removed)

    def delete(self, kind: str, name: str, current: Mapping[str, Any]) -> None:
        self.handler_for(kind).delete(name, current)

    def can_update(self, kind: str, changed: Iterable[str]) -> bool:
        return self.handler_for(kind).can_update(changed)

    def normalize(self, kind: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        return self.handler_for(kind).normalize(attributes)

    def write_only(self, kind: str) -> frozenset[str]:
        return self.handler_for(kind).write_only
