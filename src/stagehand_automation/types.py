from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional


def _frozen_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass
class Resource:
    kind: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass(frozen=True)
class ResourceState:
    """Snapshot of a resource as last reported by the provider."""

    kind: str
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    resource_id: Optional[str] = None
    desired: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _frozen_mapping(self.attributes))
        object.__setattr__(self, "desired", _frozen_mapping(self.desired))

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "resource_id": self.resource_id,
            "attributes": dict(self.attributes),
            "desired": dict(self.desired),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceState":
        return cls(
            kind=str(data["kind"]),
            name=str(data["name"]),
            attributes=data.get("attributes", {}),
            resource_id=data.get("resource_id"),
            desired=data.get("desired", {}),
        )


@dataclass(frozen=True)
class ConfigStep:
    name: str
    module: str
    args: Mapping[str, Any] = field(default_factory=dict)
    hosts: str = "all"
    become: bool = False
    become_user: Optional[str] = None
    idempotent: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", _frozen_mapping(self.args))


ReadinessPredicate = Callable[["HostTarget"], bool]


@dataclass
class HostTarget:
    name: str
    address: Optional[str] = None
    port: int = 22
    user: str = "root"
    connection: str = "ssh"
    credential: Optional[str] = None
    groups: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    readiness: Optional[ReadinessPredicate] = None

    def matches(self, selector: str) -> bool:
        selectors = {part.strip() for part in selector.split(",") if part.strip()}
        if not selectors or "all" in selectors:
            return True
        return self.name in selectors or bool(selectors.intersection(self.groups))


@dataclass
class Plan:
    resources: list[Resource] = field(default_factory=list)
    steps: list[ConfigStep] = field(default_factory=list)
    hosts: dict[str, HostTarget] = field(default_factory=dict)
    base_dir: Optional[Path] = None


@dataclass
class ResourceResult:
    address: str
    action: str
    changed: bool
    details: str = ""
    failed: bool = False
    state: Optional[ResourceState] = None


@dataclass
class ReconcileResult:
    results: list[ResourceResult] = field(default_factory=list)
    applied: list[ResourceState] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def state_for(self, name: str) -> Optional[ResourceState]:
        for state in self.applied:
            if state.name == name:
                return state
        return None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class RunnerState(enum.Enum):
    WAITING = "waiting"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StepResult:
    host: str
    step: str
    module: str
    changed: bool
    details: str = ""
    failed: bool = False
    skipped: bool = False
    identity: Optional[str] = None
    output: str = ""
    login_as: Optional[str] = None
    idempotent: bool = True


@dataclass
class RunResult:
    target: str
    state: RunnerState = RunnerState.WAITING
    results: list[StepResult] = field(default_factory=list)
    error: Optional[Exception] = None
    last_successful_index: int = -1
    transitions: list[RunnerState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is RunnerState.DONE

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error
