from __future__ import annotations

from typing import Any, Optional

import pytest

from stagehand_automation.executors import CommandResult, Session
from stagehand_automation.modules import StepContext
from stagehand_automation.types import ConfigStep, HostTarget


class FakeSession(Session):
    """Records every script and answers from ``responses``.

    Each response is ``(needle, returncode, stdout[, stderr])``; the first whose
    needle occurs in the script wins. Anything unmatched succeeds with no output.
    """

    def __init__(
        self,
        responses: Optional[list[tuple[Any, ...]]] = None,
        *,
        target: Optional[HostTarget] = None,
        dry_run: bool = False,
    ):
        super().__init__(target or HostTarget(name="web", address="10.0.1.4", user="ubuntu"), dry_run=dry_run)
        self.responses = list(responses or [])
        self.commands: list[str] = []
        self.closed = False

    def _execute(self, script: str, *, timeout: Optional[float]) -> CommandResult:
        self.commands.append(script)
        for needle, returncode, *output in self.responses:
            if needle in script:
                stdout = output[0] if output else ""
                stderr = output[1] if len(output) > 1 else ""
                return CommandResult(script, stdout, stderr, returncode)
        return CommandResult(script, "", "", 0)

    def close(self) -> None:
        self.closed = True

    def ran(self, needle: str) -> bool:
        return any(needle in command for command in self.commands)


@pytest.fixture
def session_factory():
    def factory(responses=None, **kwargs) -> FakeSession:
        return FakeSession(responses, **kwargs)

    return factory


@pytest.fixture
def make_context():
    def factory(
        module: str = "command",
        *,
        identity: Optional[str] = None,
        variables: Optional[dict[str, Any]] = None,
        plan_dir=None,
        target: Optional[HostTarget] = None,
    ) -> StepContext:
        return StepContext(
            target=target or HostTarget(name="web", address="10.0.1.4", user="ubuntu"),
            step=ConfigStep(name=f"{module}-step", module=module),
            identity=identity,
            variables=dict(variables or {}),
            plan_dir=plan_dir,
        )

    return factory
