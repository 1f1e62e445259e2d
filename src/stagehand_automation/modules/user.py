from __future__ import annotations

import logging
from typing import Any, Optional

from .base import Module, StepContext
from ..executors import Session
from ..types import StepResult

logger = logging.getLogger(__name__)


class UserModule(Module):
    """Ensure a user account exists; optionally make it the identity for later steps."""

    name = "user"

    def __init__(self, args: dict[str, Any]):
        super().__init__(args)
        raw_name = args.get("name")
        if not raw_name:
            raise ValueError("user module requires a name")
        self.user = str(raw_name)
        self.state = str(args.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("user module state must be 'present' or 'absent'")
        self.shell = args.get("shell")
        groups = args.get("groups") or []
        self.groups = [groups] if isinstance(groups, str) else [str(g) for g in groups]
        self.system = bool(self.to_bool(args.get("system", False)))
        self.create_home = self.to_bool(args.get("create_home"))
        self.remove_home = bool(self.to_bool(args.get("remove_home", False)))
        self.login = bool(self.to_bool(args.get("login", False)))
        if self.login and self.state == "absent":
            raise ValueError("user module cannot log in as a removed user")

    def apply(self, session: Session, context: StepContext) -> StepResult:
        user = context.identity
        exists = session.execute(["id", "-u", self.user], become_user=user, mutable=False).returncode == 0
        changes: list[str] = []

        if self.state == "absent":
            if exists:
                cmd = ["userdel"] + (["--remove"] if self.remove_home else []) + [self.user]
                result = session.execute(cmd, become_user=user)
                if result.returncode != 0:
                    return self.failure(context, result, "userdel")
                changes.append("removed")
            return self._done(context, changes)

        if not exists:
            logger.debug("Creating user %s", self.user)
            result = session.execute(self._useradd(), become_user=user)
            if result.returncode != 0:
                return self.failure(context, result, "useradd")
            changes.append("created")
        elif self.groups:
            missing = self._missing_groups(session, user)
            if missing:
                result = session.execute(
                    ["usermod", "-aG", ",".join(missing), self.user], become_user=user
                )
                if result.returncode != 0:
                    return self.failure(context, result, "usermod")
                changes.append(f"groups+={','.join(missing)}")

        step_result = self._done(context, changes)
        if self.login:
            step_result.login_as = self.user
        return step_result

    def _useradd(self) -> list[str]:
        cmd = ["useradd"]
        if self.shell:
            cmd += ["--shell", str(self.shell)]
        if self.create_home is None or self.create_home:
            cmd.append("--create-home")
        if self.system:
            cmd.append("--system")
        if self.groups:
            cmd += ["--groups", ",".join(self.groups)]
        cmd.append(self.user)
        return cmd

    def _missing_groups(self, session: Session, user: Optional[str]) -> list[str]:
        result = session.execute(["id", "-nG", self.user], become_user=user, mutable=False)
        current = set(result.stdout.split())
        return [group for group in self.groups if group not in current]

    def _done(self, context: StepContext, changes: list[str]) -> StepResult:
        detail = ", ".join(changes) if changes else "noop"
        return self.result(context, changed=bool(changes), details=detail)
