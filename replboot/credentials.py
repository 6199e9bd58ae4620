"""
Credential management for replboot.

Two independent concerns live here:

- Database principals, created on the primary: one IP-scoped replication
  account per replica, plus the root credential every node applies.
- The replica's secure channel window: a temporary, address-restricted,
  passwordless SSH login for the transfer user. The window snapshots the PAM
  and sshd policy files before touching them and restores them verbatim on
  close, whichever way the bootstrap ends.
"""

import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import BootstrapConfig, Node
from .errors import BootstrapError, ChannelRestoreError, CommandError
from .utils import (
    check_command,
    print_error,
    print_info,
    print_success,
    resolve_host,
    run_command,
    systemctl_restart,
)


# =============================================================================
# Database principals
# =============================================================================

def grant_replication_principals(
    conn,
    replicas: List[Node],
    user: str,
    password: str,
    resolve: Callable[[str], str] = resolve_host,
) -> List[str]:
    """
    Create one replication account per replica, scoped to its resolved IP.

    Returns:
        The resolved replica IPs, in replica order.
    """
    cursor = conn.cursor()
    granted = []
    try:
        for replica in replicas:
            ip = resolve(replica.address)
            print_info(f"Granting REPLICATION SLAVE to '{user}'@'{ip}' ({replica.address})")
            cursor.execute("CREATE USER %s@%s IDENTIFIED BY %s", (user, ip, password))
            cursor.execute("GRANT REPLICATION SLAVE ON *.* TO %s@%s", (user, ip))
            granted.append(ip)
        cursor.execute("FLUSH PRIVILEGES")
    finally:
        cursor.close()
    return granted


def set_root_credentials(conn, password: str, allow_remote_root: bool) -> None:
    """Set the root password and optionally create a remote root account."""
    cursor = conn.cursor()
    try:
        cursor.execute(
            "ALTER USER 'root'@'localhost' IDENTIFIED WITH caching_sha2_password BY %s",
            (password,),
        )
        if allow_remote_root:
            cursor.execute("CREATE USER 'root'@'%' IDENTIFIED BY %s", (password,))
            cursor.execute("GRANT ALL PRIVILEGES ON *.* TO 'root'@'%' WITH GRANT OPTION")
        cursor.execute("FLUSH PRIVILEGES")
    finally:
        cursor.close()


# =============================================================================
# Secure channel window
# =============================================================================

PAM_BYPASS_RULE = "auth sufficient pam_succeed_if.so quiet user = {user}\n"

SSHD_WINDOW_BLOCK = """
# replboot transfer window for {user}
Match User {user} Address {ip}
    PasswordAuthentication yes
    PermitEmptyPasswords yes
Match User {user} Address *,!{ip}
    PasswordAuthentication no
    PermitEmptyPasswords no
    PubkeyAuthentication no
    KbdInteractiveAuthentication no
    AuthenticationMethods publickey
    AllowTcpForwarding no
    PermitTunnel no
    ForceCommand /bin/false
"""


class SecureChannelWindow:
    """
    Scoped passwordless SSH access for the transfer user from the primary only.

    Use as a context manager; ``open()`` may be called inside the block and
    ``close()`` runs on exit whether or not ``open()`` was reached::

        with SecureChannelWindow(config) as window:
            window.open(primary_address)
            ...
    """

    def __init__(self, config: BootstrapConfig, resolve: Callable[[str], str] = resolve_host):
        self.config = config
        self.resolve = resolve
        self.primary_ip: Optional[str] = None
        # original path -> saved copy, or None when the file did not exist
        self._snapshots: Dict[Path, Optional[Path]] = {}
        self._closed = False

    @property
    def policy_files(self) -> List[Path]:
        return [self.config.paths.pam_sshd, self.config.paths.sshd_config]

    @property
    def is_open(self) -> bool:
        return bool(self._snapshots) and not self._closed

    def __enter__(self) -> 'SecureChannelWindow':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.close()
        except ChannelRestoreError:
            # Already reported by close(); keep the original failure visible.
            if exc_type is None:
                raise
        return False

    def open(self, primary_address: str) -> None:
        """Let the transfer user log in without a password from the primary only."""
        if self._closed:
            raise BootstrapError("Secure channel window already closed")
        if self._snapshots:
            raise BootstrapError("Secure channel window already open")

        self.primary_ip = self.resolve(primary_address)
        self._snapshot()

        user = self.config.transfer_user
        self._ensure_transfer_user(user)
        self._inject_pam_rule(user)
        self._append_sshd_rules(user, self.primary_ip)
        check_command(["sshd", "-t", "-f", str(self.config.paths.sshd_config)], sudo=True)
        systemctl_restart(self.config.ssh_service)
        print_success(f"Secure channel open for {user} from {self.primary_ip}")

    def close(self) -> None:
        """
        Restore both policy files from the snapshot and restart sshd.

        Runs at most once. Every step is attempted; failures are reported and
        then raised together as ChannelRestoreError.
        """
        if self._closed:
            return
        self._closed = True
        if not self._snapshots:
            return

        failures = []
        for original, saved in self._snapshots.items():
            try:
                if saved is None:
                    if original.exists():
                        original.unlink()
                else:
                    shutil.copy2(saved, original)
            except OSError as e:
                failures.append(f"restore {original}: {e}")
                print_error(f"Could not restore {original}: {e}")

        try:
            systemctl_restart(self.config.ssh_service)
        except CommandError as e:
            failures.append(f"restart {self.config.ssh_service}: {e}")
            print_error(f"Could not restart {self.config.ssh_service}: {e}")

        if failures:
            raise ChannelRestoreError(failures)
        print_success("Secure channel closed, SSH policy restored")

    def _snapshot(self) -> None:
        snapshot_dir = self.config.paths.snapshot_dir
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        for index, path in enumerate(self.policy_files):
            if path.exists():
                saved = snapshot_dir / f"{index}-{path.name}"
                shutil.copy2(path, saved)
                self._snapshots[path] = saved
            else:
                self._snapshots[path] = None

    def _ensure_transfer_user(self, user: str) -> None:
        transfer_dir = self.config.paths.transfer_dir
        if run_command(["id", "-u", user]).returncode != 0:
            check_command([
                "useradd", "--create-home",
                "--home-dir", str(transfer_dir),
                "--shell", "/bin/sh",
                user,
            ], sudo=True)
        check_command(["install", "-d", "-o", user, "-m", "0755", str(transfer_dir)], sudo=True)
        check_command(["passwd", "-d", user], sudo=True)

    def _inject_pam_rule(self, user: str) -> None:
        path = self.config.paths.pam_sshd
        content = path.read_text() if path.exists() else ""
        path.write_text(PAM_BYPASS_RULE.format(user=user) + content)

    def _append_sshd_rules(self, user: str, ip: str) -> None:
        path = self.config.paths.sshd_config
        content = path.read_text() if path.exists() else ""
        if content and not content.endswith("\n"):
            content += "\n"
        path.write_text(content + SSHD_WINDOW_BLOCK.format(user=user, ip=ip))
