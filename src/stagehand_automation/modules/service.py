from __future__ import annotations

from typing import Any

from .base import Module, StepContext
from ..executors import Session
from ..types import StepResult


class ServiceModule(Module):
    """Manage systemd services."""

    name = "service"

    def __init__(self, args: dict[str, Any]):
        super().__init__(args)
        raw_name = args.get("name")
        if not raw_name:
            raise ValueError("service module requires a name")
        self.service = str(raw_name)
        self.enabled = self.to_bool(args.get("enabled"))
        self.state = args.get("state")
        if self.state not in {None, "running", "stopped", "restarted"}:
            raise ValueError("service state must be 'running', 'stopped' or 'restarted'")

    def apply(self, session: Session, context: StepContext) -> StepResult:
        user = context.identity
        changes: list[str] = []

        def systemctl(*args: str, mutable: bool = True):
            return session.execute(["systemctl", *args, self.service], become_user=user, mutable=mutable)

        if self.enabled is not None:
            enabled = systemctl("is-enabled", mutable=False).returncode == 0
            if self.enabled != enabled:
                verb = "enable" if self.enabled else "disable"
                result = systemctl(verb)
                if result.returncode != 0:
                    return self.failure(context, result, verb)
                changes.append(f"{verb}d")

        if self.state is not None:
            active = systemctl("is-active", mutable=False).returncode == 0
            verb = None
            if self.state == "restarted":
                verb = "restart"
            elif self.state == "running" and not active:
                verb = "start"
            elif self.state == "stopped" and active:
                verb = "stop"
            if verb:
                result = systemctl(verb)
                if result.returncode != 0:
                    return self.failure(context, result, verb)
                changes.append({"restart": "restarted", "start": "started", "stop": "stopped"}[verb])

        detail = ", ".join(changes) if changes else "noop"
        return self.result(context, changed=bool(changes), details=detail)
