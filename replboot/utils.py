"""
Common utilities for replboot.

This module provides shared functionality for:
- Console output formatting
- Local command execution (with sudo when not root)
- SSH remote execution and SCP transfer
- systemctl service control
- Name resolution
"""

import os
import socket
import subprocess
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import CommandError


# =============================================================================
# Console Output Formatting
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    BOLD = '\033[1m'
    NC = '\033[0m'  # No Color


def print_header(message: str) -> None:
    """Print a header message with decorative border."""
    print()
    print(f"{Colors.BLUE}╔════════════════════════════════════════════════════════════╗{Colors.NC}")
    print(f"{Colors.BLUE}║{Colors.NC} {message:<58} {Colors.BLUE}║{Colors.NC}")
    print(f"{Colors.BLUE}╚════════════════════════════════════════════════════════════╝{Colors.NC}")
    print()


def print_step(message: str) -> None:
    """Print a step message."""
    print(f"{Colors.YELLOW}▶ {message}{Colors.NC}")


def print_success(message: str) -> None:
    """Print a success message."""
    print(f"{Colors.GREEN}✓ {message}{Colors.NC}")


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    print(f"{Colors.RED}✗ {message}{Colors.NC}", file=sys.stderr)


def print_warning(message: str) -> None:
    """Print a warning message."""
    print(f"{Colors.YELLOW}⚠ {message}{Colors.NC}")


def print_info(message: str) -> None:
    """Print an info message."""
    print(f"{Colors.CYAN}ℹ {message}{Colors.NC}")


# =============================================================================
# Command Execution
# =============================================================================

def run_command(
    cmd: List[str],
    capture_output: bool = True,
    check: bool = False,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    stdin_path: Optional[Path] = None,
    stdout_path: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command and return the result.

    Args:
        cmd: Command and arguments as a list
        capture_output: Whether to capture stdout/stderr
        check: Whether to raise CommandError on non-zero exit
        timeout: Command timeout in seconds
        cwd: Working directory for the command
        env: Environment variables to set on top of os.environ
        stdin_path: File fed to the command's stdin
        stdout_path: File receiving the command's stdout (stderr is still captured)

    Returns:
        CompletedProcess object. A timeout maps to returncode 124 and a
        missing executable to 127, like a shell would report them.
    """
    kwargs = {
        "text": True,
        "timeout": timeout,
        "cwd": cwd,
        "env": {**os.environ, **(env or {})},
    }
    with ExitStack() as stack:
        if stdin_path is not None:
            kwargs["stdin"] = stack.enter_context(open(stdin_path, "r"))
        if stdout_path is not None:
            kwargs["stdout"] = stack.enter_context(open(stdout_path, "w"))
            kwargs["stderr"] = subprocess.PIPE
        else:
            kwargs["capture_output"] = capture_output
        try:
            result = subprocess.run(cmd, **kwargs)
        except subprocess.TimeoutExpired:
            result = subprocess.CompletedProcess(cmd, 124, "", "Command timed out")
        except FileNotFoundError:
            result = subprocess.CompletedProcess(cmd, 127, "", f"Command not found: {cmd[0]}")

    if check and result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stderr)
    return result


def sudo_prefix() -> List[str]:
    """Return ["sudo"] unless the process already runs as root."""
    return [] if os.geteuid() == 0 else ["sudo"]


def run_command_with_sudo(
    cmd: List[str],
    **kwargs
) -> subprocess.CompletedProcess:
    """Run a command with sudo prefix (skipped when already root)."""
    return run_command(sudo_prefix() + cmd, **kwargs)


def check_command(cmd: List[str], sudo: bool = False, **kwargs) -> subprocess.CompletedProcess:
    """Run a command and raise CommandError on non-zero exit."""
    if sudo:
        return run_command_with_sudo(cmd, check=True, **kwargs)
    return run_command(cmd, check=True, **kwargs)


# =============================================================================
# SSH Operations
# =============================================================================

SSH_OPTIONS: Sequence[str] = (
    "-o", "BatchMode=yes",
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
)


def ssh_execute(
    host: str,
    command: str,
    user: str = "root",
    timeout: int = 30,
) -> Tuple[bool, str]:
    """
    Execute a command on a remote host via SSH.

    Args:
        host: Remote host
        command: Command to execute
        user: SSH user
        timeout: Timeout in seconds

    Returns:
        Tuple of (success, output)
    """
    cmd = [
        "ssh",
        *SSH_OPTIONS,
        "-o", f"ConnectTimeout={min(timeout, 10)}",
        f"{user}@{host}",
        command
    ]

    result = run_command(cmd, timeout=timeout)
    return result.returncode == 0, result.stdout.strip() if result.stdout else ""


def ssh_is_reachable(
    host: str,
    user: str = "root",
    timeout: int = 5,
) -> bool:
    """Check if a trivial remote command succeeds for user@host."""
    success, _ = ssh_execute(host, "true", user=user, timeout=timeout)
    return success


def scp_copy(
    source: str,
    dest: str,
    timeout: int = 600,
) -> subprocess.CompletedProcess:
    """
    Copy a file via SCP.

    Args:
        source: Source path (local or remote user@host:path)
        dest: Destination path
        timeout: Timeout in seconds

    Returns:
        CompletedProcess of the scp invocation
    """
    return run_command(["scp", *SSH_OPTIONS, source, dest], timeout=timeout)


# =============================================================================
# Systemctl Operations
# =============================================================================

def systemctl_restart(service: str) -> None:
    """Restart a systemctl service, raising CommandError on failure."""
    check_command(["systemctl", "restart", service], sudo=True)


# =============================================================================
# Network Operations
# =============================================================================

def resolve_host(name: str) -> str:
    """Resolve a host name to an IPv4 address via the system resolver."""
    return socket.gethostbyname(name)


def get_hostname() -> str:
    """Get the local machine's hostname."""
    return socket.gethostname()
