"""Stagehand provisioning and configuration toolkit."""

from .errors import (
    CycleError,
    PlanValidationError,
    ProviderError,
    ReadinessTimeout,
    RunCancelled,
    StagehandError,
    StepError,
    TransportError,
)
from .handoff import provision_and_configure
from .inventory import InventoryLoader
from .readiness import ReadinessGate
from .reconciler import Reconciler
from .runner import StepRunner

__all__ = [
    "Reconciler",
    "StepRunner",
    "ReadinessGate",
    "InventoryLoader",
    "provision_and_configure",
    "StagehandError",
    "PlanValidationError",
    "CycleError",
    "ProviderError",
    "TransportError",
    "ReadinessTimeout",
    "RunCancelled",
    "StepError",
]
