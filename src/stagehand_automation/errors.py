from __future__ import annotations

from typing import Optional, Sequence


class StagehandError(Exception):
    """Base class for errors raised by the toolkit."""


class PlanValidationError(StagehandError, ValueError):
    """Raised when a declared plan cannot be used as-is."""


class CycleError(StagehandError):
    """Raised when resource dependencies form a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class ProviderError(StagehandError):
    """Wraps a failure reported by a provider for a single resource."""

    def __init__(self, resource: str, message: str, *, operation: Optional[str] = None):
        self.resource = resource
        self.operation = operation
        self.message = message
        prefix = f"{resource}: {operation} failed" if operation else resource
        super().__init__(f"{prefix}: {message}")


class TransportError(StagehandError):
    """Raised when the control channel cannot connect or execute."""


class ReadinessTimeout(StagehandError, TimeoutError):
    """Raised when a host does not become ready before the deadline."""

    def __init__(self, target: str, timeout: float, attempts: int, last_error: Optional[str] = None):
        self.target = target
        self.timeout = timeout
        self.attempts = attempts
        self.last_error = last_error
        message = f"{target} not ready after {timeout:g}s ({attempts} attempts)"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class RunCancelled(StagehandError):
    """Raised when a run is cancelled before it completes."""


class StepError(StagehandError):
    """A configuration step failed; later steps were not executed."""

    def __init__(self, step: str, index: int, output: str = ""):
        self.step = step
        self.index = index
        self.output = output
        message = f"step {index} '{step}' failed"
        if output:
            message = f"{message}: {output}"
        super().__init__(message)
