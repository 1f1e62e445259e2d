from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence

from .errors import PlanValidationError, ProviderError
from .reconciler import Reconciler
from .runner import StepRunner
from .types import ConfigStep, HostTarget, ReconcileResult, Resource, ResourceState, RunResult

logger = logging.getLogger(__name__)


def host_from_state(
    state: ResourceState,
    template: HostTarget,
    *,
    address_attribute: str = "public_ip",
) -> HostTarget:
    """Build the runner's target from a provisioned compute resource.

    Connection details (user, key, port, groups, variables) come from
    ``template``; only the address is taken from the provider.
    """
    address = state.get(address_attribute) or state.get("private_ip")
    if not address:
        raise ProviderError(
            state.address, f"no '{address_attribute}' reported by provider", operation="handoff"
        )
    return replace(template, address=str(address))


def provision_and_configure(
    reconciler: Reconciler,
    runner: StepRunner,
    resources: Sequence[Resource],
    steps: Sequence[ConfigStep],
    *,
    compute: str,
    template: HostTarget,
    address_attribute: str = "public_ip",
) -> tuple[ReconcileResult, Optional[RunResult]]:
    """Apply ``resources`` then run ``steps`` against the address of ``compute``.

    The runner is not started when the reconcile failed or did not produce a
    state for ``compute``.
    """
    if compute not in {resource.name for resource in resources}:
        raise PlanValidationError(f"Compute resource '{compute}' is not declared")
    applied = reconciler.reconcile(resources)
    if not applied.ok:
        logger.error("reconcile failed; not configuring %s: %s", compute, applied.error)
        return applied, None
    state = applied.state_for(compute)
    if state is None:
        raise ProviderError(compute, "no state after apply", operation="handoff")
    target = host_from_state(state, template, address_attribute=address_attribute)
    logger.info("handing off %s at %s to runner", state.address, target.address)
    return applied, runner.run(target, steps)
