from __future__ import annotations

import ipaddress
import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from ..errors import ProviderError
from .base import Provider, ResourceHandler

logger = logging.getLogger(__name__)

PUBLIC_POOL = ipaddress.ip_network("203.0.113.0/24")


class MemoryHandler(ResourceHandler):
    """Handler storing resources in the owning ``MemoryProvider``."""

    def __init__(
        self,
        provider: "MemoryProvider",
        kind: str,
        *,
        prefix: Optional[str] = None,
        updatable: frozenset[str] = frozenset(),
        write_only: frozenset[str] = frozenset(),
    ):
        self.provider = provider
        self.kind = kind
        self.prefix = prefix or kind
        self.updatable = updatable
        self.write_only = write_only

    def read(self, name: str) -> Optional[dict[str, Any]]:
        self.provider.record("read", self.kind, name)
        stored = self.provider.resources.get(self.kind, {}).get(name)
        return dict(stored) if stored is not None else None

    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        self.provider.record("create", self.kind, name)
        with self.provider.lock:
            if name in self.provider.resources.get(self.kind, {}):
                raise ProviderError(f"{self.kind}.{name}", "already exists", operation="create")
            stored = {
                key: value for key, value in attributes.items() if key not in self.write_only
            }
            stored["id"] = self.provider.next_id(self.prefix)
            stored.update(self.generated(stored))
            self.provider.resources.setdefault(self.kind, {})[name] = stored
            self.provider.save()
        return dict(stored)

    def update(
        self,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        *,
        removed: Iterable[str] = (),
    ) -> dict[str, Any]:
        self.provider.record("update", self.kind, name)
        with self.provider.lock:
            stored = self.provider.resources.get(self.kind, {}).get(name)
            if stored is None:
                raise ProviderError(f"{self.kind}.{name}", "does not exist", operation="update")
            for key in removed:
                if key != "id":
                    stored.pop(key, None)
            for key, value in attributes.items():
                if key not in self.write_only:
                    stored[key] = value
            self.provider.save()
        return dict(stored)

    def delete(self, name: str, current: Mapping[str, Any]) -> None:
        self.provider.record("delete", self.kind, name)
        with self.provider.lock:
            removed = self.provider.resources.get(self.kind, {}).pop(name, None)
            if removed is None:
                raise ProviderError(f"{self.kind}.{name}", "does not exist", operation="delete")
            self.provider.save()

    def generated(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        return {}


class InstanceHandler(MemoryHandler):
    """Instances get a private address from their subnet and a public one from a pool."""

    def generated(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        extra: dict[str, Any] = {"state": "running"}
        subnet = self.provider.find_by_id("subnet", stored.get("subnet_id"))
        if subnet and subnet.get("cidr_block"):
            network = ipaddress.ip_network(str(subnet["cidr_block"]), strict=False)
            extra["private_ip"] = self.provider.next_address(network)
        if stored.get("associate_public_ip_address", True):
            extra["public_ip"] = self.provider.next_address(PUBLIC_POOL)
        return extra


class MemoryProvider(Provider):
    """In-process provider that mimics a small cloud API.

    Every call is appended to ``calls`` so callers can assert on which
    operations reached the provider. When ``path`` is set the inventory is
    persisted as JSON after each mutation.
    """

    name = "memory"
    MUTATING = frozenset({"create", "update", "delete"})

    def __init__(self, path: Optional[Path] = None, *, failures: Optional[dict[tuple[str, str], str]] = None):
        self.path = Path(path) if path else None
        self.lock = threading.RLock()
        self.calls: list[tuple[str, str, str]] = []
        self.failures = dict(failures or {})
        self.resources: dict[str, dict[str, dict[str, Any]]] = {}
        self._counter = 0
        self._allocated: dict[str, int] = {}
        self._load()
        handlers = {
            "vpc": MemoryHandler(
                self, "vpc", updatable=frozenset({"tags", "enable_dns_hostnames", "enable_dns_support"})
            ),
            "subnet": MemoryHandler(
                self, "subnet", updatable=frozenset({"tags", "map_public_ip_on_launch"})
            ),
            "security_group": MemoryHandler(
                self, "security_group", prefix="sg", updatable=frozenset({"tags", "ingress", "egress"})
            ),
            "instance": InstanceHandler(
                self, "instance", prefix="i", updatable=frozenset({"tags"}),
                write_only=frozenset({"user_data"}),
            ),
        }
        super().__init__(handlers, default=None)

    def handler_for(self, kind: str) -> ResourceHandler:
        handler = self.handlers.get(kind)
        if handler is None:
            handler = MemoryHandler(self, kind, updatable=frozenset({"*"}))
            self.handlers[kind] = handler
        return handler

    @property
    def mutations(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] in self.MUTATING]

    def record(self, operation: str, kind: str, name: str) -> None:
        with self.lock:
            self.calls.append((operation, kind, name))
        message = self.failures.get((operation, name))
        if message is not None:
            raise ProviderError(f"{kind}.{name}", message, operation=operation)

    def next_id(self, prefix: str) -> str:
        with self.lock:
            self._counter += 1
            return f"{prefix}-{self._counter:08x}"

    def next_address(self, network: ipaddress.IPv4Network | ipaddress.IPv6Network) -> str:
        with self.lock:
            key = str(network)
            # Skip the network address and the first few host addresses, as clouds reserve them.
            offset = self._allocated.get(key, 3) + 1
            self._allocated[key] = offset
            if offset >= network.num_addresses - 1:
                raise ProviderError(key, "address pool exhausted", operation="allocate")
            return str(network.network_address + offset)

    def find_by_id(self, kind: str, resource_id: Any) -> Optional[dict[str, Any]]:
        if not resource_id:
            return None
        for stored in self.resources.get(kind, {}).values():
            if stored.get("id") == resource_id:
                return stored
        return None

    def save(self) -> None:
        if self.path is None:
            return
        payload = {
            "counter": self._counter,
            "allocated": self._allocated,
            "resources": self.resources,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("Provider inventory %s is corrupt; starting empty", self.path)
            return
        self._counter = int(payload.get("counter", 0))
        self._allocated = {str(k): int(v) for k, v in payload.get("allocated", {}).items()}
        self.resources = payload.get("resources", {})
