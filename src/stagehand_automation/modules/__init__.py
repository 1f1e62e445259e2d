from .base import Module, StepContext
from .command import CommandModule
from .compose import ComposeModule
from .file import FileModule
from .package import PackageModule
from .service import ServiceModule
from .user import UserModule
from .wait import WaitForConnectionModule

MODULE_REGISTRY = {
    "command": CommandModule,
    "shell": CommandModule,
    "package": PackageModule,
    "user": UserModule,
    "file": FileModule,
    "template": FileModule,
    "service": ServiceModule,
    "compose": ComposeModule,
    "wait_for_connection": WaitForConnectionModule,
}

__all__ = [
    "Module",
    "StepContext",
    "CommandModule",
    "ComposeModule",
    "FileModule",
    "PackageModule",
    "ServiceModule",
    "UserModule",
    "WaitForConnectionModule",
    "MODULE_REGISTRY",
]
