from __future__ import annotations

import getpass
import json
from pathlib import Path
from typing import Any, Optional

import yaml

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import PlanValidationError
from .state import normalize_value
from .types import ConfigStep, HostTarget, Plan, Resource

RESOURCE_KEYS = {"kind", "name", "depends_on", "attributes"}
STEP_KEYS = {"name", "module", "hosts", "become", "become_user", "idempotent", "args"}


class InventoryLoader:
    """Loads plan definitions (resources, steps, hosts) from TOML, YAML or JSON."""

    def load(self, path: Path) -> Plan:
        path = Path(path)
        text = path.read_text()
        data = self.parse_text(text, path.suffix.lower(), source=str(path))
        plan = self.from_dict(data, source=str(path))
        plan.base_dir = path.parent
        return plan

    def parse_text(self, text: str, suffix: str, *, source: str = "<string>") -> dict[str, Any]:
        try:
            if suffix == ".toml":
                data = tomllib.loads(text)
            elif suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(text) or {}
            elif suffix == ".json":
                data = json.loads(text)
            else:
                raise PlanValidationError(f"{source}: unsupported plan format '{suffix or '?'}'")
        except tomllib.TOMLDecodeError as exc:
            raise PlanValidationError(f"{source}: {exc}") from None
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            where = f":{mark.line + 1}:{mark.column + 1}" if mark is not None else ""
            raise PlanValidationError(f"{source}{where} {getattr(exc, 'problem', exc)}") from None
        except json.JSONDecodeError as exc:
            raise PlanValidationError(f"{source}:{exc.lineno}:{exc.colno} {exc.msg}") from None
        if not isinstance(data, dict):
            raise PlanValidationError(f"{source}: plan must be a mapping")
        return data

    def from_dict(self, data: dict[str, Any], *, source: str = "<string>") -> Plan:
        hosts = self._parse_hosts(data.get("hosts") or {}, source)
        resources = [
            self._parse_resource(raw, index, source)
            for index, raw in enumerate(data.get("resources") or [], start=1)
        ]
        steps = [
            self._parse_step(raw, index, source)
            for index, raw in enumerate(data.get("steps") or [], start=1)
        ]
        names = [resource.name for resource in resources]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise PlanValidationError(f"{source}: duplicate resource names {', '.join(duplicates)}")
        return Plan(resources=resources, steps=steps, hosts=hosts)

    def dump(self, plan: Plan, path: Path) -> None:
        path = Path(path)
        data = self.to_dict(plan)
        suffix = path.suffix.lower()
        if suffix in {".yaml", ".yml"}:
            text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        elif suffix == ".json":
            text = json.dumps(data, indent=2)
        else:
            raise ValueError(f"Cannot write plans as '{suffix or '?'}'; use .yaml or .json")
        path.write_text(text)

    @staticmethod
    def to_dict(plan: Plan) -> dict[str, Any]:
        hosts: dict[str, Any] = {}
        for name, host in plan.hosts.items():
            entry: dict[str, Any] = {
                "connection": host.connection,
                "user": host.user,
                "port": host.port,
                "groups": list(host.groups),
                "variables": normalize_value(host.variables),
            }
            if host.address:
                entry["address"] = host.address
            if host.credential:
                entry["key_file"] = host.credential
            hosts[name] = entry
        resources = [
            {
                "kind": resource.kind,
                "name": resource.name,
                "depends_on": list(resource.depends_on),
                "attributes": normalize_value(resource.attributes),
            }
            for resource in plan.resources
        ]
        steps = []
        for step in plan.steps:
            entry = {
                "name": step.name,
                "module": step.module,
                "hosts": step.hosts,
                "become": step.become,
                "idempotent": step.idempotent,
                "args": normalize_value(step.args),
            }
            if step.become_user:
                entry["become_user"] = step.become_user
            steps.append(entry)
        return {"hosts": hosts, "resources": resources, "steps": steps}

    @staticmethod
    def _parse_hosts(raw_hosts: Any, source: str) -> dict[str, HostTarget]:
        if not isinstance(raw_hosts, dict):
            raise PlanValidationError(f"{source}: hosts must be a mapping of name -> settings")
        hosts: dict[str, HostTarget] = {}
        for name, payload in raw_hosts.items():
            payload = payload or {}
            if not isinstance(payload, dict):
                raise PlanValidationError(f"{source}: host '{name}' must be a mapping")
            connection = str(payload.get("connection", "ssh"))
            if connection not in {"ssh", "local"}:
                raise PlanValidationError(f"{source}: host '{name}' has unknown connection '{connection}'")
            default_user = getpass.getuser() if connection == "local" else "root"
            groups = payload.get("groups") or []
            variables = payload.get("variables") or {}
            if not isinstance(variables, dict):
                raise PlanValidationError(f"{source}: host '{name}' variables must be a mapping")
            hosts[str(name)] = HostTarget(
                name=str(name),
                address=payload.get("address"),
                port=int(payload.get("port", 22)),
                user=str(payload.get("user", default_user)),
                connection=connection,
                credential=payload.get("key_file"),
                groups=[groups] if isinstance(groups, str) else [str(g) for g in groups],
                variables=dict(variables),
            )
        return hosts

    @staticmethod
    def _parse_resource(raw: Any, index: int, source: str) -> Resource:
        if not isinstance(raw, dict):
            raise PlanValidationError(f"{source}: resource {index} must be a mapping")
        kind = raw.get("kind")
        name = raw.get("name")
        if not kind:
            raise PlanValidationError(f"{source}: resource {index} is missing a kind")
        if not name:
            raise PlanValidationError(f"{source}: resource {index} ({kind}) is missing a name")
        attributes = dict(raw.get("attributes") or {})
        attributes.update({k: v for k, v in raw.items() if k not in RESOURCE_KEYS})
        return Resource(
            kind=str(kind),
            name=str(name),
            attributes=attributes,
            depends_on=InventoryLoader._as_list(raw.get("depends_on")),
        )

    @staticmethod
    def _parse_step(raw: Any, index: int, source: str) -> ConfigStep:
        if not isinstance(raw, dict):
            raise PlanValidationError(f"{source}: step {index} must be a mapping")
        module = raw.get("module")
        if not module:
            raise PlanValidationError(f"{source}: step {index} is missing a module")
        args = dict(raw.get("args") or {})
        args.update({k: v for k, v in raw.items() if k not in STEP_KEYS})
        hosts = raw.get("hosts", "all")
        if isinstance(hosts, (list, tuple)):
            hosts = ",".join(str(h) for h in hosts)
        become_user: Optional[str] = raw.get("become_user")
        return ConfigStep(
            name=str(raw.get("name") or f"step-{index}"),
            module=str(module),
            args=args,
            hosts=str(hosts),
            become=bool(raw.get("become", False)),
            become_user=str(become_user) if become_user else None,
            idempotent=bool(raw.get("idempotent", True)),
        )

    @staticmethod
    def _as_list(value: Any) -> list[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]
