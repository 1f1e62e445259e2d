from __future__ import annotations

import logging
from typing import Any, Optional

from .base import Module, StepContext
from ..executors import CommandResult, Session
from ..types import StepResult

logger = logging.getLogger(__name__)


class PackageManager:
    name = "generic"
    binary = ""

    def is_installed(self, session: Session, package: str, user: Optional[str]) -> bool:
        raise NotImplementedError

    def install_command(self, packages: list[str], *, update_cache: bool) -> str:
        raise NotImplementedError

    def remove_command(self, packages: list[str]) -> str:
        raise NotImplementedError


class AptPackageManager(PackageManager):
    name = "apt"
    binary = "apt-get"

    def is_installed(self, session: Session, package: str, user: Optional[str]) -> bool:
        result = session.execute(
            ["dpkg-query", "-W", "-f=${Status}", package], become_user=user, mutable=False
        )
        return result.returncode == 0 and "install ok installed" in result.stdout

    def install_command(self, packages: list[str], *, update_cache: bool) -> str:
        install = "DEBIAN_FRONTEND=noninteractive apt-get install -y -q " + " ".join(packages)
        if update_cache:
            return f"apt-get update -q && {install}"
        return install

    def remove_command(self, packages: list[str]) -> str:
        return "DEBIAN_FRONTEND=noninteractive apt-get remove -y -q " + " ".join(packages)


class DnfPackageManager(PackageManager):
    name = "dnf"
    binary = "dnf"

    def is_installed(self, session: Session, package: str, user: Optional[str]) -> bool:
        result = session.execute(["rpm", "-q", package], become_user=user, mutable=False)
        return result.returncode == 0

    def install_command(self, packages: list[str], *, update_cache: bool) -> str:
        flag = " --refresh" if update_cache else ""
        return f"dnf install -y{flag} " + " ".join(packages)

    def remove_command(self, packages: list[str]) -> str:
        return "dnf remove -y " + " ".join(packages)


class YumPackageManager(DnfPackageManager):
    name = "yum"
    binary = "yum"

    def install_command(self, packages: list[str], *, update_cache: bool) -> str:
        return "yum install -y " + " ".join(packages)

    def remove_command(self, packages: list[str]) -> str:
        return "yum remove -y " + " ".join(packages)


MANAGERS: dict[str, type[PackageManager]] = {
    "apt": AptPackageManager,
    "dnf": DnfPackageManager,
    "yum": YumPackageManager,
}


def detect_manager(session: Session, preferred: Optional[str], user: Optional[str]) -> PackageManager:
    if preferred:
        key = preferred.lower()
        if key not in MANAGERS:
            raise ValueError(f"Unknown package manager '{preferred}'")
        return MANAGERS[key]()
    for manager_cls in MANAGERS.values():
        probe = session.execute(
            f"command -v {manager_cls.binary}", become_user=user, mutable=False
        )
        if probe.returncode == 0:
            return manager_cls()
    raise RuntimeError(f"No supported package manager found on {session.target.name}")


class PackageModule(Module):
    """Install or remove packages using the package manager found on the host."""

    name = "package"

    def __init__(self, args: dict[str, Any]):
        super().__init__(args)
        packages = args.get("name") or args.get("packages")
        if isinstance(packages, str):
            self.packages = [packages]
        else:
            self.packages = [str(pkg) for pkg in packages or []]
        if not self.packages:
            raise ValueError("package module requires at least one package")
        self.state = str(args.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("package module state must be 'present' or 'absent'")
        self.preferred_manager = args.get("manager")
        self.update_cache = bool(self.to_bool(args.get("update_cache", False)))

    def apply(self, session: Session, context: StepContext) -> StepResult:
        user = context.identity
        manager = detect_manager(session, self.preferred_manager, user)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, context.target.name, self.packages
        )
        installed = {pkg for pkg in self.packages if manager.is_installed(session, pkg, user)}
        if self.state == "present":
            needed = [pkg for pkg in self.packages if pkg not in installed]
            if not needed:
                return self.result(context, changed=False, details=f"manager={manager.name} already-installed")
            result = session.execute(
                manager.install_command(needed, update_cache=self.update_cache), become_user=user
            )
            return self._finish(context, result, manager, f"installed={','.join(needed)}")

        removable = [pkg for pkg in self.packages if pkg in installed]
        if not removable:
            return self.result(context, changed=False, details=f"manager={manager.name} already-removed")
        result = session.execute(manager.remove_command(removable), become_user=user)
        return self._finish(context, result, manager, f"removed={','.join(removable)}")

    def _finish(
        self, context: StepContext, result: CommandResult, manager: PackageManager, detail: str
    ) -> StepResult:
        if result.returncode != 0:
            return self.failure(context, result, f"{manager.name}")
        return self.result(context, changed=True, details=f"manager={manager.name} {detail}")
