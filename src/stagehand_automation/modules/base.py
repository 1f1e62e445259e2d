from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from ..executors import CommandResult, Session
from ..types import ConfigStep, HostTarget, StepResult


@dataclass
class StepContext:
    target: HostTarget
    step: ConfigStep
    identity: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    plan_dir: Optional[Path] = None
    wait_ready: Optional[Callable[[], int]] = None


class Module(ABC):
    """Shared surface for configuration step modules."""

    name = "module"

    def __init__(self, args: Mapping[str, Any]):
        self.args = dict(args)

    @abstractmethod
    def apply(self, session: Session, context: StepContext) -> StepResult:
        """Perform the step against ``context.target`` through ``session``."""

    def result(
        self,
        context: StepContext,
        *,
        changed: bool,
        details: str,
        failed: bool = False,
        output: str = "",
    ) -> StepResult:
        return StepResult(
            host=context.target.name,
            step=context.step.name,
            module=self.name,
            changed=changed,
            details=details,
            failed=failed,
            identity=context.identity,
            output=output,
        )

    @staticmethod
    def to_bool(value: Any) -> Optional[bool]:
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "yes", "1", "on"}:
                return True
            if lowered in {"false", "no", "0", "off"}:
                return False
            raise ValueError(f"Unable to interpret boolean value '{value}'")
        return bool(value)

    @staticmethod
    def summarize(result: CommandResult) -> str:
        for text in (result.stderr, result.stdout):
            if not text:
                continue
            stripped = text.strip()
            if not stripped:
                continue
            line = stripped.splitlines()[-1]
            return (line[:157] + "...") if len(line) > 160 else line
        return ""

    def failure(self, context: StepContext, result: CommandResult, action: str) -> StepResult:
        message = self.summarize(result)
        detail = f"{action} rc={result.returncode}"
        if message:
            detail = f"{detail}: {message}"
        output = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        return self.result(context, changed=False, details=detail, failed=True, output=output)
