from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Optional

import jinja2

from .base import Module, StepContext
from ..executors import Session
from ..types import StepResult


class FileModule(Module):
    """Ensure a remote file has the requested contents, mode and owner."""

    name = "file"

    def __init__(self, args: dict[str, Any]):
        super().__init__(args)
        raw_path = args.get("path") or args.get("dest")
        if not raw_path:
            raise ValueError("file module requires a path")
        self.path = str(raw_path)
        self.state = str(args.get("state", "present"))
        if self.state not in {"present", "absent", "directory"}:
            raise ValueError("file module state must be 'present', 'absent', or 'directory'")
        raw_content = args.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.template = str(args["template"]) if args.get("template") else None
        self.mode = self._parse_mode(args.get("mode"))
        self.owner = args.get("owner")
        self.group = args.get("group")
        self.variables = args.get("vars", {})
        if not isinstance(self.variables, dict):
            raise ValueError("file module vars must be a mapping")

    def apply(self, session: Session, context: StepContext) -> StepResult:
        user = context.identity
        quoted = shlex.quote(self.path)
        changes: list[str] = []

        if self.state == "absent":
            exists = session.execute(["test", "-e", self.path], become_user=user, mutable=False)
            if exists.returncode != 0:
                return self.result(context, changed=False, details="noop")
            result = session.execute(f"rm -rf {quoted}", become_user=user)
            if result.returncode != 0:
                return self.failure(context, result, "rm")
            return self.result(context, changed=True, details="removed")

        if self.state == "directory":
            is_dir = session.execute(["test", "-d", self.path], become_user=user, mutable=False)
            if is_dir.returncode != 0:
                result = session.execute(f"mkdir -p {quoted}", become_user=user)
                if result.returncode != 0:
                    return self.failure(context, result, "mkdir")
                changes.append("created")
        else:
            content = self._render_content(context)
            current = session.read_file(self.path, become_user=user)
            if current != content:
                session.write_file(self.path, content, become_user=user)
                changes.append("content")

        if self.mode is not None:
            stat = session.execute(["stat", "-c", "%a", self.path], become_user=user, mutable=False)
            current_mode = self._parse_mode(stat.stdout.strip()) if stat.returncode == 0 else None
            if current_mode != self.mode:
                result = session.execute(f"chmod {self.mode:04o} {quoted}", become_user=user)
                if result.returncode != 0:
                    return self.failure(context, result, "chmod")
                changes.append(f"mode->{self.mode:04o}")

        if self.owner or self.group:
            wanted = f"{self.owner or ''}:{self.group or ''}"
            stat = session.execute(["stat", "-c", "%U:%G", self.path], become_user=user, mutable=False)
            owner, _, group = stat.stdout.strip().partition(":")
            if (self.owner and owner != self.owner) or (self.group and group != self.group):
                result = session.execute(f"chown {shlex.quote(wanted)} {quoted}", become_user=user)
                if result.returncode != 0:
                    return self.failure(context, result, "chown")
                changes.append(f"owner->{wanted}")

        detail = ", ".join(changes) if changes else "noop"
        return self.result(context, changed=bool(changes), details=detail)

    def _render_content(self, context: StepContext) -> str:
        if not self.template:
            return self.content
        template_path = Path(self.template).expanduser()
        if not template_path.is_absolute() and context.plan_dir is not None:
            template_path = context.plan_dir / template_path
        values: dict[str, Any] = dict(context.variables)
        values.update(self.variables)
        env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(template_path.parent)),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        return env.get_template(template_path.name).render(**values)

    @staticmethod
    def _parse_mode(value: Optional[Any]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        return int(text, 8)
