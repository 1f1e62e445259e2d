from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .errors import ReadinessTimeout, RunCancelled, StepError, TransportError
from .executors import Session, connect
from .modules import MODULE_REGISTRY, Module, StepContext
from .modules.user import UserModule
from .readiness import ReadinessGate
from .secrets import SecretResolver
from .types import ConfigStep, HostTarget, RunnerState, RunResult, StepResult

logger = logging.getLogger(__name__)

Connector = Callable[..., Session]

TRANSITIONS = {
    RunnerState.WAITING: {RunnerState.READY, RunnerState.FAILED},
    RunnerState.READY: {RunnerState.RUNNING},
    RunnerState.RUNNING: {RunnerState.DONE, RunnerState.FAILED},
    RunnerState.DONE: set(),
    RunnerState.FAILED: set(),
}


class StepRunner:
    """Waits for a host to accept connections, then runs steps in order.

    The first failing step ends the run; nothing after it executes and
    nothing before it is rolled back.
    """

    def __init__(
        self,
        *,
        connector: Connector = connect,
        gate: Optional[ReadinessGate] = None,
        poll_interval: float = 2.0,
        timeout: float = 300.0,
        backoff: float = 1.0,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
        key_file: Optional[Path] = None,
        plan_dir: Optional[Path] = None,
        secret_resolver: Optional[SecretResolver] = None,
        progress_callback: Optional[Callable[[HostTarget, ConfigStep], None]] = None,
    ):
        self.connector = connector
        self.cancel_event = cancel_event or threading.Event()
        self.gate = gate or ReadinessGate(
            poll_interval=poll_interval,
            timeout=timeout,
            backoff=backoff,
            cancel_event=self.cancel_event,
        )
        self.dry_run = dry_run
        self.key_file = key_file
        self.plan_dir = plan_dir
        self.secret_resolver = secret_resolver or SecretResolver()
        self.progress_callback = progress_callback

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, target: HostTarget, steps: Sequence[ConfigStep]) -> RunResult:
        run = RunResult(target=target.name, transitions=[RunnerState.WAITING])
        logger.debug("host=%s state=%s", target.name, run.state.value)

        try:
            self.gate.wait(target)
        except (ReadinessTimeout, RunCancelled) as exc:
            logger.error("host=%s readiness failed: %s", target.name, exc)
            self._fail(run, exc)
            return run
        self._transition(run, RunnerState.READY)
        self._transition(run, RunnerState.RUNNING)

        try:
            session = self.connector(target, dry_run=self.dry_run, key_file=self.key_file)
        except TransportError as exc:
            logger.error("host=%s connection failed: %s", target.name, exc)
            self._fail(run, exc)
            return run

        with session:
            self._run_steps(run, session, target, list(steps))
        if run.state is RunnerState.RUNNING:
            self._transition(run, RunnerState.DONE)
        return run

    def _run_steps(
        self, run: RunResult, session: Session, target: HostTarget, steps: list[ConfigStep]
    ) -> None:
        identity: Optional[str] = None
        known = {target.user, "root"}
        created_later = self._created_users(steps)

        for index, step in enumerate(steps):
            if self.cancel_event.is_set():
                self._fail(run, RunCancelled(f"run on {target.name} cancelled before step {index}"))
                return
            if not target.matches(step.hosts):
                run.results.append(
                    StepResult(
                        host=target.name,
                        step=step.name,
                        module=step.module,
                        changed=False,
                        details=f"skipped (hosts={step.hosts})",
                        skipped=True,
                    )
                )
                continue
            if self.progress_callback:
                self.progress_callback(target, step)

            run_as = (step.become_user or "root") if step.become else identity
            if run_as and run_as not in known and created_later.get(run_as, -1) > index:
                detail = f"identity '{run_as}' is only created by step {created_later[run_as]}"
                self._step_failed(run, target, step, index, detail)
                return

            result, module = self._apply(session, target, step, run_as)
            result.idempotent = step.idempotent
            run.results.append(result)
            if result.failed:
                logger.error(
                    "step=%s host=%s failed: %s", step.name, target.name, result.details
                )
                self._fail(run, StepError(step.name, index, result.output or result.details))
                return

            run.last_successful_index = index
            if isinstance(module, UserModule) and module.state == "present":
                known.add(module.user)
            if result.login_as:
                identity = result.login_as
                known.add(identity)
                logger.debug("host=%s identity now %s", target.name, identity)
            logger.debug(
                "step=%s host=%s changed=%s idempotent=%s",
                step.name,
                target.name,
                result.changed,
                step.idempotent,
            )

    def _apply(
        self, session: Session, target: HostTarget, step: ConfigStep, run_as: Optional[str]
    ) -> tuple[StepResult, Optional[Module]]:
        module_cls = MODULE_REGISTRY.get(step.module)
        if module_cls is None:
            return self._failed_result(target, step, run_as, f"unknown module '{step.module}'"), None
        try:
            module = module_cls(dict(step.args))
            context = StepContext(
                target=target,
                step=step,
                identity=run_as,
                variables=self._variables(target, step),
                plan_dir=self.plan_dir,
                wait_ready=lambda: self.gate.wait(target),
            )
            result = module.apply(session, context)
        except Exception as exc:  # noqa: BLE001
            logger.debug("step=%s host=%s raised", step.name, target.name, exc_info=True)
            return self._failed_result(target, step, run_as, str(exc) or exc.__class__.__name__), None
        return result, module

    def _variables(self, target: HostTarget, step: ConfigStep) -> dict[str, Any]:
        values: dict[str, Any] = {
            "host": target.name,
            "address": target.address or "",
            "user": target.user,
        }
        values.update(target.variables)
        step_vars = step.args.get("vars") or {}
        if isinstance(step_vars, dict):
            values.update(step_vars)
        return self.secret_resolver.resolve(values)

    @staticmethod
    def _created_users(steps: list[ConfigStep]) -> dict[str, int]:
        created: dict[str, int] = {}
        for index, step in enumerate(steps):
            if step.module != "user" or str(step.args.get("state", "present")) != "present":
                continue
            name = step.args.get("name")
            if name and str(name) not in created:
                created[str(name)] = index
        return created

    @staticmethod
    def _failed_result(
        target: HostTarget, step: ConfigStep, run_as: Optional[str], detail: str
    ) -> StepResult:
        return StepResult(
            host=target.name,
            step=step.name,
            module=step.module,
            changed=False,
            details=detail,
            failed=True,
            identity=run_as,
        )

    def _step_failed(
        self, run: RunResult, target: HostTarget, step: ConfigStep, index: int, detail: str
    ) -> None:
        run.results.append(self._failed_result(target, step, None, detail))
        logger.error("step=%s host=%s failed: %s", step.name, target.name, detail)
        self._fail(run, StepError(step.name, index, detail))

    def _fail(self, run: RunResult, error: Exception) -> None:
        run.error = error
        self._transition(run, RunnerState.FAILED)

    @staticmethod
    def _transition(run: RunResult, new_state: RunnerState) -> None:
        if new_state not in TRANSITIONS[run.state]:
            raise RuntimeError(f"illegal transition {run.state.value} -> {new_state.value}")
        logger.debug("host=%s state %s -> %s", run.target, run.state.value, new_state.value)
        run.state = new_state
        run.transitions.append(new_state)
