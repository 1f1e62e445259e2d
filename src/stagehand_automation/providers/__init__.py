from __future__ import annotations

from pathlib import Path
from typing import Optional

from .aws import AwsProvider
from .base import Provider, ResourceHandler
from .memory import MemoryProvider

PROVIDER_REGISTRY = {
    "memory": MemoryProvider,
    "aws": AwsProvider,
}


def create_provider(
    name: str,
    *,
    inventory_path: Optional[Path] = None,
    region: Optional[str] = None,
    profile: Optional[str] = None,
) -> Provider:
    if name not in PROVIDER_REGISTRY:
        raise ValueError(f"Unknown provider '{name}'")
    if name == "memory":
        return MemoryProvider(inventory_path)
    return AwsProvider(region=region, profile=profile)


__all__ = [
    "Provider",
    "ResourceHandler",
    "MemoryProvider",
    "AwsProvider",
    "PROVIDER_REGISTRY",
    "create_provider",
]
