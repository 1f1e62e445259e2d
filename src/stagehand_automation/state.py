from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from .errors import CycleError
from .graph import DependencyGraph
from .types import ResourceState

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def normalize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [normalize_value(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, "items"):
        return {k: normalize_value(v) for k, v in value.items()}
    return value


class StateStore:
    """JSON file of the resource states produced by the last apply."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.previous = self._load()
        self.current: dict[str, dict[str, Any]] = {}

    def get(self, name: str) -> Optional[ResourceState]:
        entry = self.current.get(name) or self.previous.get(name)
        if entry is None:
            return None
        return ResourceState.from_dict(entry)

    def record(self, state: ResourceState, depends_on: Iterable[str] = ()) -> None:
        entry = normalize_value(state.to_dict())
        entry["depends_on"] = sorted(depends_on)
        self.current[state.name] = entry

    def forget(self, name: str) -> None:
        self.current.pop(name, None)
        self.previous.pop(name, None)

    def stale(self, declared: Iterable[str]) -> list[ResourceState]:
        """Previously recorded states not in ``declared``, dependents first."""
        keep = set(declared)
        entries = {name: entry for name, entry in self.previous.items() if name not in keep}
        ordered = self._order_entries(entries, reverse=True)
        return [ResourceState.from_dict(entries[name]) for name in ordered]

    def write(self) -> None:
        # Entries not touched by this run are kept so a failed apply can resume.
        resources = dict(self.previous)
        resources.update(self.current)
        data = {"version": STATE_VERSION, "resources": resources}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True))
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            logger.debug("Unable to chmod state file %s", self.path, exc_info=True)
        self.previous = resources
        self.current = {}

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("State file %s is corrupt; starting fresh", self.path)
            return {}
        resources = data.get("resources", {}) if isinstance(data, dict) else {}
        return {str(name): entry for name, entry in resources.items() if isinstance(entry, dict)}

    @staticmethod
    def _order_entries(entries: dict[str, dict[str, Any]], reverse: bool = False) -> list[str]:
        if not entries:
            return []
        names = list(entries)
        edges = {
            name: {dep for dep in entry.get("depends_on", []) if dep in entries}
            for name, entry in entries.items()
        }
        try:
            ordered = DependencyGraph(names, edges).ordered_names()
        except CycleError:
            logger.warning("Stale state entries form a dependency cycle; using file order")
            ordered = names
        if reverse:
            ordered.reverse()
        return ordered
