from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence, Union

from .config import DEFAULT_CONFIG, StagehandConfig, load_config
from .errors import StagehandError
from .handoff import provision_and_configure
from .inventory import InventoryLoader
from .providers import create_provider
from .reconciler import Reconciler
from .runner import StepRunner
from .state import StateStore
from .types import (
    ConfigStep,
    HostTarget,
    Plan,
    ReconcileResult,
    Resource,
    ResourceResult,
    RunResult,
    StepResult,
)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stagehand provisioning and configuration runner")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to stagehand config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "plan",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a plan file (default from config or /etc/stagehand/plan.toml)",
    )
    common.add_argument(
        "--state-file",
        type=Path,
        help="Location for resource state (default: plan + .state.json)",
    )
    common.add_argument("--provider", help="Provider to reconcile against (memory or aws)")
    common.add_argument("--max-workers", type=int, help="Resources applied concurrently")

    hosts = argparse.ArgumentParser(add_help=False)
    hosts.add_argument("--timeout", type=float, help="Seconds to wait for a host to become ready")
    hosts.add_argument("--poll-interval", type=float, help="Seconds between readiness probes")
    hosts.add_argument("--key-file", type=Path, help="SSH private key used to reach hosts")
    hosts.add_argument("--dry-run", action="store_true", help="Report steps without changing hosts")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("plan", parents=[common], help="Show the changes apply would make")
    sub.add_parser("apply", parents=[common], help="Converge resources to the plan")
    sub.add_parser("destroy", parents=[common], help="Delete every declared resource")
    configure = sub.add_parser("configure", parents=[common, hosts], help="Run steps against plan hosts")
    configure.add_argument(
        "--host", action="append", dest="hosts", help="Only configure this host (repeatable)"
    )
    up = sub.add_parser("up", parents=[common, hosts], help="Apply resources, then configure the compute host")
    up.add_argument("--compute", help="Resource whose address is handed to the runner")
    up.add_argument("--host", dest="host_template", help="Host entry supplying user, key and variables")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    cfg = load_config(args.config)
    _apply_aws_env(cfg)
    plan_path = args.plan or cfg.plan
    try:
        plan = InventoryLoader().load(plan_path)
    except (OSError, ValueError) as exc:
        _clear_progress()
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    handlers = {
        "plan": _cmd_plan,
        "apply": _cmd_apply,
        "destroy": _cmd_destroy,
        "configure": _cmd_configure,
        "up": _cmd_up,
    }
    try:
        return handlers[args.command](args, cfg, plan, plan_path)
    except (StagehandError, ValueError) as exc:
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1


def _cmd_plan(args, cfg: StagehandConfig, plan: Plan, plan_path: Path) -> int:
    reconciler = _reconciler(args, cfg, plan_path, dry_run=True)
    return _report_reconcile(reconciler.plan(plan.resources), "Plan")


def _cmd_apply(args, cfg: StagehandConfig, plan: Plan, plan_path: Path) -> int:
    reconciler = _reconciler(args, cfg, plan_path)
    return _report_reconcile(reconciler.reconcile(plan.resources), "Apply")


def _cmd_destroy(args, cfg: StagehandConfig, plan: Plan, plan_path: Path) -> int:
    reconciler = _reconciler(args, cfg, plan_path)
    return _report_reconcile(reconciler.destroy(plan.resources), "Destroy")


def _cmd_configure(args, cfg: StagehandConfig, plan: Plan, plan_path: Path) -> int:
    selected = args.hosts or list(plan.hosts)
    missing = [name for name in selected if name not in plan.hosts]
    if missing:
        print(colorize(f"Unknown host(s): {', '.join(missing)}", Ansi.RED), file=sys.stderr)
        return 1
    runner = _runner(args, cfg, plan)
    status = 0
    for name in selected:
        run = runner.run(plan.hosts[name], plan.steps)
        if _report_run(run, plan.steps) != 0:
            status = 1
    return status


def _cmd_up(args, cfg: StagehandConfig, plan: Plan, plan_path: Path) -> int:
    compute = args.compute or cfg.compute or _first_instance(plan.resources)
    if compute is None:
        print(colorize("No compute resource to configure; pass --compute", Ansi.RED), file=sys.stderr)
        return 1
    template = _host_template(plan, args.host_template, compute)
    reconciler = _reconciler(args, cfg, plan_path)
    runner = _runner(args, cfg, plan)
    applied, run = provision_and_configure(
        reconciler,
        runner,
        plan.resources,
        plan.steps,
        compute=compute,
        template=template,
        address_attribute=cfg.address_attribute,
    )
    status = _report_reconcile(applied, "Apply")
    if run is None:
        return 1
    return max(status, _report_run(run, plan.steps))


def _reconciler(args, cfg: StagehandConfig, plan_path: Path, *, dry_run: bool = False) -> Reconciler:
    state_path = args.state_file or cfg.state_file
    if not state_path:
        state_path = plan_path.with_name(plan_path.name + ".state.json")
    provider_name = args.provider or cfg.provider
    inventory = cfg.provider_inventory or state_path.with_name(plan_path.name + ".provider.json")
    provider = create_provider(
        provider_name,
        inventory_path=inventory,
        region=cfg.aws_region,
        profile=cfg.aws_profile,
    )
    return Reconciler(
        provider,
        StateStore(state_path),
        dry_run=dry_run,
        max_workers=args.max_workers or cfg.max_workers,
        progress_callback=print_resource_progress,
    )


def _runner(args, cfg: StagehandConfig, plan: Plan) -> StepRunner:
    cancel_event = threading.Event()
    _install_cancel_handlers(cancel_event)
    return StepRunner(
        timeout=args.timeout if args.timeout is not None else cfg.readiness_timeout,
        poll_interval=args.poll_interval if args.poll_interval is not None else cfg.poll_interval,
        backoff=cfg.backoff,
        cancel_event=cancel_event,
        dry_run=args.dry_run,
        key_file=args.key_file or cfg.ssh_key_file,
        plan_dir=plan.base_dir,
        progress_callback=print_step_progress,
    )


def _install_cancel_handlers(event: threading.Event) -> None:
    def _handler(signum, frame) -> None:
        logging.getLogger(__name__).warning("Received signal %s; stopping after the current step", signum)
        event.set()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def _first_instance(resources: Sequence[Resource]) -> Optional[str]:
    for resource in resources:
        if resource.kind == "instance":
            return resource.name
    return None


def _host_template(plan: Plan, name: Optional[str], compute: str) -> HostTarget:
    if name:
        if name not in plan.hosts:
            raise ValueError(f"Host '{name}' is not defined")
        return plan.hosts[name]
    if compute in plan.hosts:
        return plan.hosts[compute]
    if plan.hosts:
        return next(iter(plan.hosts.values()))
    return HostTarget(name=compute)


def _report_reconcile(result: ReconcileResult, verb: str) -> int:
    summary = Summary()
    for item in result.results:
        _clear_progress()
        summary.add(item)
        print(format_resource_result(item))
    _clear_progress()
    print(summary.render())
    if result.error is not None:
        applied = ", ".join(state.address for state in result.applied) or "none"
        print(colorize(f"{verb} failed: {result.error}", Ansi.RED), file=sys.stderr)
        print(f"Applied before failure: {applied}", file=sys.stderr)
        return 1
    return 0


def _report_run(run: RunResult, steps: Sequence[ConfigStep]) -> int:
    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for result in run.results:
        _clear_progress()
        summary.add(result)
        if not should_display_result(result, effective_level):
            continue
        print(format_step_result(result))
    _clear_progress()
    print(summary.render())
    if run.error is not None:
        last = run.last_successful_index
        last_name = steps[last].name if 0 <= last < len(steps) else "none"
        print(colorize(f"Run on {run.target} failed: {run.error}", Ansi.RED), file=sys.stderr)
        print(f"Last successful step: {last} ({last_name})", file=sys.stderr)
        return 1
    return 0


def format_resource_result(result: ResourceResult) -> str:
    color: Optional[str]
    if result.failed:
        color = Ansi.RED
    elif result.action == "skipped":
        color = Ansi.ORANGE
    elif result.changed:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    return colorize(f"{result.address} {result.action} - {result.details}", color)


def format_step_result(result: StepResult) -> str:
    status = "changed" if result.changed else "ok"
    color: Optional[str] = Ansi.BLUE
    if result.failed:
        status = "failed"
        color = Ansi.RED
    elif result.skipped:
        status = "skipped"
        color = Ansi.ORANGE
    elif result.changed:
        color = Ansi.GREEN
    identity = f" as {result.identity}" if result.identity else ""
    line = f"{result.host}::{result.module}[{result.step}]{identity} {status} - {result.details}"
    return colorize(line, color)


def should_display_result(result: StepResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def print_resource_progress(resource: Resource) -> None:
    _print_progress(f"{resource.address} pending...")


def print_step_progress(host: HostTarget, step: ConfigStep) -> None:
    _print_progress(f"{host.name}::{step.module}[{step.name}] pending...")


def _print_progress(line: str) -> None:
    global _last_progress_len
    _clear_progress()
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


def _apply_aws_env(cfg: StagehandConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


class Summary:
    def __init__(self) -> None:
        self.changes = 0
        self.unchanged = 0
        self.skipped = 0
        self.failures = 0

    def add(self, result: Union[ResourceResult, StepResult]) -> None:
        if result.failed:
            self.failures += 1
        elif getattr(result, "skipped", False) is True or getattr(result, "action", "") == "skipped":
            self.skipped += 1
        elif result.changed:
            self.changes += 1
        else:
            self.unchanged += 1

    def render(self) -> str:
        parts = [
            f"Changes: {self.changes}",
            f"Unchanged: {self.unchanged}",
            f"Skipped: {self.skipped}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
