from __future__ import annotations

import logging
import shlex
from string import Template
from typing import Any, Optional

from .base import Module, StepContext
from ..executors import Session
from ..types import StepResult

logger = logging.getLogger(__name__)

# Progress words docker compose prints for containers it actually touched.
CHANGE_MARKERS = ("Created", "Recreated", "Started", "Pulled", "Removed", "Stopped")


class ComposeModule(Module):
    """Bring a Docker Compose project up or down."""

    name = "compose"

    def __init__(self, args: dict[str, Any]):
        super().__init__(args)
        project_dir = args.get("project_dir") or args.get("chdir")
        if not project_dir:
            raise ValueError("compose module requires a project_dir")
        self.project_dir = str(project_dir)
        self.files = self._as_list(args.get("files") or args.get("file"))
        self.state = str(args.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("compose module state must be 'present' or 'absent'")
        self.pull = bool(self.to_bool(args.get("pull", False)))
        self.registry = args.get("registry")
        if self.registry is not None and not isinstance(self.registry, dict):
            raise ValueError("compose registry must be a mapping with url, username and password")

    def apply(self, session: Session, context: StepContext) -> StepResult:
        user = context.identity
        base = "docker compose" + "".join(f" -f {shlex.quote(f)}" for f in self.files)

        if self.registry:
            login = self._login(session, context, user)
            if login is not None:
                return login

        if self.state == "absent":
            running = session.execute(f"{base} ps -q", become_user=user, cwd=self.project_dir, mutable=False)
            if running.returncode == 0 and not running.stdout.strip():
                return self.result(context, changed=False, details="noop")
            result = session.execute(f"{base} down", become_user=user, cwd=self.project_dir)
            if result.returncode != 0:
                return self.failure(context, result, "compose down")
            return self.result(context, changed=True, details="down")

        if self.pull:
            pulled = session.execute(f"{base} pull -q", become_user=user, cwd=self.project_dir)
            if pulled.returncode != 0:
                return self.failure(context, pulled, "compose pull")
        result = session.execute(f"{base} up -d", become_user=user, cwd=self.project_dir)
        if result.returncode != 0:
            return self.failure(context, result, "compose up")
        output = f"{result.stdout}\n{result.stderr}"
        changed = session.dry_run or any(marker in output for marker in CHANGE_MARKERS)
        detail = "up" if changed else "running"
        return self.result(context, changed=changed, details=detail, output=output.strip())

    def _login(self, session: Session, context: StepContext, user: Optional[str]) -> Optional[StepResult]:
        # Credentials usually arrive as $name placeholders filled from resolved secrets.
        registry = {
            key: Template(str(value)).safe_substitute(context.variables)
            for key, value in (self.registry or {}).items()
            if value is not None
        }
        url = registry.get("url", "")
        username = registry.get("username")
        password = registry.get("password")
        if not username or password is None:
            raise ValueError("compose registry requires username and password")
        login = ["docker", "login"] + ([url] if url else []) + ["-u", str(username), "--password-stdin"]
        command = f"printf %s {shlex.quote(password)} | " + " ".join(shlex.quote(p) for p in login)
        result = session.execute(command, become_user=user, redact=[password, shlex.quote(password)])
        if result.returncode != 0:
            return self.failure(context, result, "docker login")
        logger.debug("host=%s logged in to registry %s", context.target.name, url or "default")
        return None

    @staticmethod
    def _as_list(value: Any) -> list[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]
