from __future__ import annotations

from .base import Module, StepContext
from ..executors import Session
from ..types import StepResult


class WaitForConnectionModule(Module):
    """Block until the host passes its readiness check again, e.g. after a reboot."""

    name = "wait_for_connection"

    def apply(self, session: Session, context: StepContext) -> StepResult:
        if context.wait_ready is None:
            return self.result(context, changed=False, details="no readiness gate configured")
        attempts = context.wait_ready()
        return self.result(context, changed=False, details=f"ready after {attempts} attempt(s)")
