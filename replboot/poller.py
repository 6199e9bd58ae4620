"""
Readiness polling for replboot.

All cross-process and cross-node rendezvous points (local MySQL service,
replica SSH channel, Backup Artifact arrival, primary MySQL port) are waited
on with the same bounded retry: re-evaluate a predicate at a fixed interval
until it holds or the ceiling elapses.
"""

import os
import socket
import time
from pathlib import Path
from typing import Callable

from .config import BootstrapConfig, DEFAULT_POLL_INTERVAL, DEFAULT_WAIT_TIMEOUT
from .errors import WaitTimeout
from .utils import run_command, ssh_is_reachable


def wait_until(
    predicate: Callable[[], bool],
    timeout: float = DEFAULT_WAIT_TIMEOUT,
    interval: float = DEFAULT_POLL_INTERVAL,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> float:
    """
    Wait for a predicate to become true.

    The predicate is evaluated immediately, then every ``interval`` seconds.
    The final sleep is clipped to the deadline and the predicate gets one
    last evaluation there.

    Returns:
        Seconds elapsed until the predicate held.

    Raises:
        WaitTimeout: the predicate was still false at the deadline.
    """
    start = clock()
    deadline = start + timeout
    while True:
        if predicate():
            return clock() - start
        now = clock()
        if now >= deadline:
            raise WaitTimeout(description, timeout)
        sleep(min(interval, deadline - now))


# =============================================================================
# Predicates
# =============================================================================

def mysql_ping(config: BootstrapConfig) -> Callable[[], bool]:
    """mysqladmin ping succeeds (the server answers, credentials aside)."""
    cmd = ["mysqladmin", "--connect-timeout=2", "ping"]
    if config.mysql_socket:
        cmd.append(f"--socket={config.mysql_socket}")

    def check() -> bool:
        return run_command(cmd, timeout=10).returncode == 0
    return check


def tcp_port_open(host: str, port: int, timeout: float = 2.0) -> Callable[[], bool]:
    """A TCP connection to host:port can be established."""
    def check() -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False
    return check


def file_readable(path: Path) -> Callable[[], bool]:
    """The file exists and the current process can read it."""
    def check() -> bool:
        return os.path.isfile(path) and os.access(path, os.R_OK)
    return check


# =============================================================================
# Rendezvous interfaces
# =============================================================================

class ChannelProbe:
    """Tells whether a replica's secure channel accepts the transfer user."""

    def is_open(self, host: str) -> bool:
        raise NotImplementedError


class SshChannelProbe(ChannelProbe):
    """Probe the channel by running a trivial remote command over SSH."""

    def __init__(self, user: str, timeout: int = 5):
        self.user = user
        self.timeout = timeout

    def is_open(self, host: str) -> bool:
        return ssh_is_reachable(host, user=self.user, timeout=self.timeout)


class ArtifactStore:
    """Tells whether the Backup Artifact has been delivered."""

    def present(self) -> bool:
        raise NotImplementedError


class LocalArtifactStore(ArtifactStore):
    """The artifact is delivered once its file is readable at the landing path."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._check = file_readable(self.path)

    def present(self) -> bool:
        return self._check()
