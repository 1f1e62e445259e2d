from __future__ import annotations

import logging
import shlex
from string import Template
from typing import Any, Iterable, Optional, Sequence

from .base import Module, StepContext
from ..executors import CommandResult, Session
from ..types import StepResult

logger = logging.getLogger(__name__)


class CommandModule(Module):
    """Run a shell command with simple guards, mirroring Ansible's command/shell."""

    name = "command"

    def __init__(self, args: dict[str, Any]):
        super().__init__(args)
        raw_command = args.get("command") or args.get("cmd")
        if raw_command is None:
            raise ValueError("command module requires a command")
        self.raw_command = raw_command
        self.only_if = args.get("only_if")
        self.unless = args.get("unless")
        self.creates = str(args["creates"]) if args.get("creates") else None
        self.chdir = str(args["chdir"]) if args.get("chdir") else None
        self.env = self._normalize_env(args.get("env") or args.get("environment"))
        self.allowed_returns = self._normalize_returns(args.get("returns", [0]))
        self.timeout = self._normalize_timeout(args.get("timeout"))

    def apply(self, session: Session, context: StepContext) -> StepResult:
        command = self._render(self.raw_command, context)
        user = context.identity

        if self.creates:
            path = Template(self.creates).safe_substitute(context.variables)
            probe = session.execute(["test", "-e", path], become_user=user, mutable=False)
            if probe.returncode == 0:
                return self.result(context, changed=False, details=f"skipped (creates {path})")

        if self.only_if:
            guard = self._run_guard(session, self._render(self.only_if, context), user)
            if guard.returncode != 0:
                return self.result(
                    context, changed=False, details=f"skipped (only_if rc={guard.returncode})"
                )

        if self.unless:
            guard = self._run_guard(session, self._render(self.unless, context), user)
            if guard.returncode == 0:
                return self.result(
                    context, changed=False, details=f"skipped (unless rc={guard.returncode})"
                )

        result = session.execute(
            command,
            become_user=user,
            env=self.env,
            cwd=self.chdir,
            timeout=self.timeout,
        )
        if result.returncode not in self.allowed_returns:
            logger.debug("command failed step=%s rc=%s", context.step.name, result.returncode)
            return self.failure(context, result, "command")

        detail = "dry-run" if session.dry_run else f"ran (rc={result.returncode})"
        output = result.stdout.strip()
        return self.result(context, changed=True, details=detail, output=output)

    def _run_guard(self, session: Session, command: str, user: Optional[str]) -> CommandResult:
        return session.execute(
            command,
            become_user=user,
            env=self.env,
            cwd=self.chdir,
            timeout=self.timeout,
            mutable=False,
        )

    @staticmethod
    def _render(value: Any, context: StepContext) -> str:
        if isinstance(value, str):
            return Template(value).safe_substitute(context.variables)
        if isinstance(value, Sequence):
            return " ".join(
                shlex.quote(Template(str(v)).safe_substitute(context.variables)) for v in value
            )
        raise ValueError("command/guard must be a string or list")

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("command env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("command returns must be an int or list of ints")

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("command timeout must be numeric") from exc
