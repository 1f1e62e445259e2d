from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_PLAN = Path("/etc/stagehand/plan.toml")
DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
ENV_PREFIX = "STAGEHAND_"


@dataclass
class StagehandConfig:
    plan: Path = DEFAULT_PLAN
    state_file: Optional[Path] = None
    provider: str = "memory"
    provider_inventory: Optional[Path] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    ssh_key_file: Optional[Path] = None
    readiness_timeout: float = 300.0
    poll_interval: float = 2.0
    backoff: float = 1.0
    max_workers: int = 1
    compute: Optional[str] = None
    address_attribute: str = "public_ip"


def load_config(path: Path, environ: Optional[Mapping[str, str]] = None) -> StagehandConfig:
    """Read ``[defaults]`` from a TOML file, then apply ``STAGEHAND_*`` overrides."""
    defaults: dict[str, Any] = {}
    if path.exists():
        data = tomllib.loads(path.read_text())
        defaults = dict(data.get("defaults", {}))

    env = os.environ if environ is None else environ
    for key in StagehandConfig.__dataclass_fields__:
        value = env.get(ENV_PREFIX + key.upper())
        if value:
            defaults[key] = value

    def optional_path(key: str) -> Optional[Path]:
        value = defaults.get(key)
        return Path(str(value)).expanduser() if value else None

    def optional_str(key: str) -> Optional[str]:
        value = defaults.get(key)
        return str(value) if value else None

    return StagehandConfig(
        plan=Path(str(defaults.get("plan", DEFAULT_PLAN))),
        state_file=optional_path("state_file"),
        provider=str(defaults.get("provider", "memory")),
        provider_inventory=optional_path("provider_inventory"),
        aws_region=optional_str("aws_region"),
        aws_profile=optional_str("aws_profile"),
        ssh_key_file=optional_path("ssh_key_file"),
        readiness_timeout=float(defaults.get("readiness_timeout", 300.0)),
        poll_interval=float(defaults.get("poll_interval", 2.0)),
        backoff=float(defaults.get("backoff", 1.0)),
        max_workers=int(defaults.get("max_workers", 1)),
        compute=optional_str("compute"),
        address_attribute=str(defaults.get("address_attribute", "public_ip")),
    )
