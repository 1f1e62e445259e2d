from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Callable, Optional

from .errors import ReadinessTimeout, RunCancelled
from .types import HostTarget, ReadinessPredicate

logger = logging.getLogger(__name__)


def ssh_banner_probe(target: HostTarget, *, expect: str = "SSH-", timeout: float = 3.0) -> bool:
    """Connect to the control port and check the identification string.

    An SSH server speaks first, so reading the greeting is enough to tell a
    booted sshd from a port that merely accepts connections.
    """
    if not target.address:
        return False
    with socket.create_connection((target.address, target.port), timeout=timeout) as sock:
        banner = sock.recv(255)
    if not banner:
        logger.info("Checked %s:%d: connection closed before greeting", target.address, target.port)
        return False
    return banner.decode(errors="replace").startswith(expect)


def always_ready(target: HostTarget) -> bool:
    return True


def default_predicate(target: HostTarget) -> ReadinessPredicate:
    if target.readiness is not None:
        return target.readiness
    if target.connection == "local":
        return always_ready
    return ssh_banner_probe


class ReadinessGate:
    """Blocks until a host passes its readiness predicate.

    Connection errors count as "not ready yet" and are retried every
    ``poll_interval`` seconds (multiplied by ``backoff`` after each attempt,
    capped at ``max_interval``) until ``timeout`` elapses. Setting
    ``cancel_event`` aborts the wait with ``RunCancelled``.
    """

    def __init__(
        self,
        predicate: Optional[ReadinessPredicate] = None,
        *,
        poll_interval: float = 2.0,
        timeout: float = 300.0,
        backoff: float = 1.0,
        max_interval: float = 30.0,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")
        self.predicate = predicate
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.backoff = backoff
        self.max_interval = max(max_interval, poll_interval)
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

    def wait(self, target: HostTarget) -> int:
        """Return the number of attempts it took for ``target`` to become ready."""
        predicate = self.predicate or default_predicate(target)
        deadline = self.clock() + self.timeout
        interval = self.poll_interval
        attempts = 0
        last_error: Optional[str] = None
        while True:
            if self.cancel_event.is_set():
                raise RunCancelled(f"readiness wait for {target.name} cancelled")
            attempts += 1
            try:
                if predicate(target):
                    logger.debug("host=%s ready after %d attempt(s)", target.name, attempts)
                    return attempts
                last_error = "not ready"
            except OSError as exc:
                last_error = str(exc) or exc.__class__.__name__
            logger.debug("host=%s attempt=%d not ready: %s", target.name, attempts, last_error)
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReadinessTimeout(target.name, self.timeout, attempts, last_error)
            if self.cancel_event.wait(min(interval, remaining)):
                raise RunCancelled(f"readiness wait for {target.name} cancelled")
            interval = min(interval * self.backoff, self.max_interval)
