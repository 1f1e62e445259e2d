from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Mapping, Optional, Sequence

from .errors import ProviderError
from .graph import DependencyGraph
from .providers.base import Provider
from .references import UNKNOWN, resolve_references
from .state import StateStore, normalize_value
from .types import ReconcileResult, Resource, ResourceResult, ResourceState

logger = logging.getLogger(__name__)

_MISSING = object()

Visit = Callable[[int, Mapping[str, ResourceState]], tuple[ResourceResult, Optional[Exception]]]


class Reconciler:
    """Converges provider state to a declared set of resources."""

    def __init__(
        self,
        provider: Provider,
        state_store: Optional[StateStore] = None,
        *,
        dry_run: bool = False,
        max_workers: int = 1,
        progress_callback: Optional[Callable[[Resource], None]] = None,
    ):
        self.provider = provider
        self.state_store = state_store
        self.dry_run = dry_run
        self.max_workers = max(1, int(max_workers))
        self.progress_callback = progress_callback

    def reconcile(self, desired: Sequence[Resource]) -> ReconcileResult:
        """Apply ``desired`` in dependency order.

        Raises ``CycleError`` or ``PlanValidationError`` before any provider call
        when the graph is unusable. Provider failures are reported on the result:
        dependents of a failed resource are skipped, independent branches still run.
        """
        resources = list(desired)
        graph = DependencyGraph.from_resources(resources)
        order = graph.order()
        logger.debug("reconcile order=%s dry_run=%s", ",".join(graph.names[i] for i in order), self.dry_run)

        def visit(idx: int, dep_states: Mapping[str, ResourceState]):
            return self._apply_one(resources[idx], dep_states)

        result = self._walk(resources, graph, order, visit, reverse=False)

        if self.state_store is not None and not self.dry_run:
            for state in result.applied:
                deps = graph.dependencies[graph.index[state.name]]
                self.state_store.record(state, [graph.names[i] for i in deps])
            if result.error is None:
                self._remove_stale(self.state_store, graph.names, result)
            self.state_store.write()
        return result

    def plan(self, desired: Sequence[Resource]) -> ReconcileResult:
        """Compute the changes ``reconcile`` would make without mutating anything."""
        previous = self.dry_run
        self.dry_run = True
        try:
            return self.reconcile(desired)
        finally:
            self.dry_run = previous

    def destroy(self, desired: Sequence[Resource]) -> ReconcileResult:
        """Delete every declared resource, dependents before their dependencies."""
        resources = list(desired)
        graph = DependencyGraph.from_resources(resources)
        order = graph.order()

        def visit(idx: int, dep_states: Mapping[str, ResourceState]):
            return self._destroy_one(resources[idx])

        result = self._walk(resources, graph, order, visit, reverse=True)
        if self.state_store is not None and not self.dry_run:
            for item in result.results:
                if not item.failed and item.action in {"delete", "noop"}:
                    self.state_store.forget(item.address.split(".", 1)[1])
            self.state_store.write()
        return result

    # Scheduling ---------------------------------------------------------
    def _walk(
        self,
        resources: list[Resource],
        graph: DependencyGraph,
        order: list[int],
        visit: Visit,
        *,
        reverse: bool,
    ) -> ReconcileResult:
        waits_for = graph.dependents if reverse else graph.dependencies
        sequence = list(reversed(order)) if reverse else list(order)
        result = ReconcileResult()
        states: dict[str, ResourceState] = {}
        done: set[int] = set()
        halted: set[int] = set()

        def snapshot(idx: int) -> dict[str, ResourceState]:
            return {
                graph.names[dep]: states[graph.names[dep]]
                for dep in graph.dependencies[idx]
                if graph.names[dep] in states
            }

        def blocked(idx: int) -> bool:
            if waits_for[idx] & halted:
                halted.add(idx)
                resource = resources[idx]
                logger.debug("resource=%s skipped: dependency failed", resource.address)
                result.skipped.append(resource.name)
                result.results.append(
                    ResourceResult(
                        address=resource.address,
                        action="skipped",
                        changed=False,
                        details="dependency failed",
                    )
                )
                return True
            return False

        def finish(idx: int, outcome: ResourceResult, error: Optional[Exception]) -> None:
            result.results.append(outcome)
            if error is not None:
                halted.add(idx)
                result.failed.append(resources[idx].name)
                if result.error is None:
                    result.error = error
                return
            done.add(idx)
            if outcome.state is not None:
                states[resources[idx].name] = outcome.state
                if not reverse and not self.dry_run:
                    result.applied.append(outcome.state)

        def start(idx: int) -> None:
            if self.progress_callback:
                self.progress_callback(resources[idx])

        if self.max_workers == 1:
            for idx in sequence:
                if blocked(idx):
                    continue
                start(idx)
                outcome, error = visit(idx, snapshot(idx))
                finish(idx, outcome, error)
            return result

        pending = list(sequence)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            running: dict[Future, int] = {}
            while pending or running:
                for idx in list(pending):
                    if blocked(idx):
                        pending.remove(idx)
                    elif waits_for[idx] <= done:
                        pending.remove(idx)
                        start(idx)
                        running[pool.submit(visit, idx, snapshot(idx))] = idx
                if not running:
                    break
                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    idx = running.pop(future)
                    outcome, error = future.result()
                    finish(idx, outcome, error)
        return result

    # Per-resource work --------------------------------------------------
    def _apply_one(
        self, resource: Resource, dep_states: Mapping[str, ResourceState]
    ) -> tuple[ResourceResult, Optional[Exception]]:
        address = resource.address
        operation = "resolve"
        try:
            try:
                attributes = resolve_references(
                    resource.attributes,
                    dep_states,
                    placeholder=UNKNOWN if self.dry_run else None,
                )
            except KeyError as exc:
                raise ProviderError(address, f"unresolved reference {exc.args[0]}", operation=operation) from None
            attributes = self.provider.normalize(resource.kind, attributes)

            operation = "read"
            current = self.provider.read(resource.kind, resource.name)
            if current is None:
                operation = "create"
                if self.dry_run:
                    return ResourceResult(address, "create", True, "would create"), None
                created = self.provider.create(resource.kind, resource.name, attributes)
                state = self._snapshot(resource, created, attributes)
                logger.debug("resource=%s created id=%s", address, state.resource_id)
                return ResourceResult(address, "create", True, "created", state=state), None

            changed, removed = self._changed_keys(resource, attributes, current)
            if not changed:
                state = self._snapshot(resource, current, attributes)
                return ResourceResult(address, "noop", False, "noop", state=state), None

            keys = ",".join(changed)
            if self.provider.can_update(resource.kind, changed):
                operation = "update"
                if self.dry_run:
                    state = self._snapshot(resource, current, attributes)
                    return ResourceResult(address, "update", True, f"would update {keys}", state=state), None
                updated = self.provider.update(
                    resource.kind, resource.name, current, attributes, removed=removed
                )
                state = self._snapshot(resource, updated, attributes)
                logger.debug("resource=%s updated keys=%s", address, keys)
                return ResourceResult(address, "update", True, f"updated {keys}", state=state), None

            operation = "replace"
            if self.dry_run:
                return ResourceResult(address, "replace", True, f"would replace ({keys})"), None
            self.provider.delete(resource.kind, resource.name, current)
            created = self.provider.create(resource.kind, resource.name, attributes)
            state = self._snapshot(resource, created, attributes)
            logger.debug("resource=%s replaced keys=%s id=%s", address, keys, state.resource_id)
            return ResourceResult(address, "replace", True, f"replaced ({keys})", state=state), None
        except Exception as exc:  # noqa: BLE001
            error = self._wrap(address, operation, exc)
            logger.error("resource=%s %s failed: %s", address, operation, error.message)
            return ResourceResult(address, "failed", False, str(error), failed=True), error

    def _destroy_one(self, resource: Resource) -> tuple[ResourceResult, Optional[Exception]]:
        address = resource.address
        operation = "read"
        try:
            current = self.provider.read(resource.kind, resource.name)
            if current is None:
                return ResourceResult(address, "noop", False, "absent"), None
            operation = "delete"
            if self.dry_run:
                return ResourceResult(address, "delete", True, "would delete"), None
            self.provider.delete(resource.kind, resource.name, current)
            logger.debug("resource=%s deleted", address)
            return ResourceResult(address, "delete", True, "deleted"), None
        except Exception as exc:  # noqa: BLE001
            error = self._wrap(address, operation, exc)
            logger.error("resource=%s %s failed: %s", address, operation, error.message)
            return ResourceResult(address, "failed", False, str(error), failed=True), error

    def _remove_stale(self, store: StateStore, declared: Sequence[str], result: ReconcileResult) -> None:
        for state in store.stale(declared):
            address = state.address
            try:
                current = self.provider.read(state.kind, state.name)
                if current is not None:
                    self.provider.delete(state.kind, state.name, current)
            except Exception as exc:  # noqa: BLE001
                error = self._wrap(address, "delete", exc)
                logger.error("resource=%s cleanup failed: %s", address, error.message)
                result.results.append(ResourceResult(address, "failed", False, str(error), failed=True))
                result.failed.append(state.name)
                if result.error is None:
                    result.error = error
                # Keep dependencies of a resource that could not be removed.
                break
            logger.debug("resource=%s removed (no longer declared)", address)
            store.forget(state.name)
            detail = "removed (no longer declared)" if current is not None else "already absent"
            result.results.append(ResourceResult(address, "delete", current is not None, detail))

    def _changed_keys(
        self, resource: Resource, desired: Mapping[str, Any], current: Mapping[str, Any]
    ) -> tuple[list[str], list[str]]:
        """Return the keys that differ and, among them, those no longer declared."""
        write_only = self.provider.write_only(resource.kind)
        previous = self.state_store.get(resource.name) if self.state_store is not None else None
        changed: set[str] = set()
        for key, value in desired.items():
            wanted = normalize_value(value)
            if key in write_only:
                # Never reported back; judge against what the last apply sent.
                if previous is not None and key in previous.desired:
                    if normalize_value(previous.desired[key]) != wanted:
                        changed.add(key)
                continue
            if normalize_value(current.get(key, _MISSING)) != wanted:
                changed.add(key)
        removed: list[str] = []
        if previous is not None:
            removed = sorted(key for key in previous.desired if key not in desired)
        return sorted(changed.union(removed)), removed

    @staticmethod
    def _snapshot(
        resource: Resource, attributes: Mapping[str, Any], desired: Mapping[str, Any]
    ) -> ResourceState:
        resource_id = attributes.get("id")
        return ResourceState(
            kind=resource.kind,
            name=resource.name,
            attributes=attributes,
            resource_id=str(resource_id) if resource_id is not None else None,
            desired=desired,
        )

    @staticmethod
    def _wrap(address: str, operation: str, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        error = ProviderError(address, str(exc) or exc.__class__.__name__, operation=operation)
        error.__cause__ = exc
        return error
