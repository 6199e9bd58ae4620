"""
Backup production, distribution and restore for replboot.

The primary dumps every schema while holding a global read lock, and keeps
that lock until every replica has the dump, so the binary log position
embedded in the dump header is the position each replica starts from.
"""

import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import BootstrapConfig, Node, POSITION_GTID
from .db import SYSTEM_SCHEMAS, client_args, client_env
from .errors import BootstrapError, CommandError, RestoreTargetNotEmpty
from .poller import ArtifactStore, ChannelProbe, LocalArtifactStore, SshChannelProbe, wait_until
from .utils import (
    print_info,
    print_step,
    print_success,
    resolve_host,
    run_command,
    scp_copy,
    ssh_execute,
)


_COORDINATES_RE = re.compile(
    r"CHANGE (?:MASTER|REPLICATION SOURCE) TO\s+"
    r"(?:MASTER|SOURCE)_LOG_FILE='(?P<file>[^']+)',\s*"
    r"(?:MASTER|SOURCE)_LOG_POS=(?P<pos>\d+)"
)
_GTID_PURGED_RE = re.compile(
    r"SET @@GLOBAL\.GTID_PURGED=(?:/\*!80000 '\+'\*/ )?'(?P<gtids>[^']*)'"
)
# The position header always precedes the first schema in a mysqldump file.
_HEADER_SCAN_LINES = 2000


@dataclass(frozen=True)
class ReplicationPosition:
    """Binary log coordinates (and GTID set, when present) captured in a dump."""
    log_file: Optional[str] = None
    log_pos: Optional[int] = None
    gtid_purged: Optional[str] = None

    def __str__(self):
        parts = []
        if self.log_file is not None:
            parts.append(f"{self.log_file}:{self.log_pos}")
        if self.gtid_purged:
            parts.append(f"gtid_purged={self.gtid_purged}")
        return ", ".join(parts) or "unknown"


def read_dump_position(path: Path) -> ReplicationPosition:
    """Parse the replication position mysqldump embedded in the dump header."""
    log_file = log_pos = gtid_purged = None
    with open(path, errors="replace") as f:
        for lineno, line in enumerate(f):
            if lineno >= _HEADER_SCAN_LINES:
                break
            if log_file is None:
                match = _COORDINATES_RE.search(line)
                if match:
                    log_file = match.group("file")
                    log_pos = int(match.group("pos"))
            if gtid_purged is None:
                match = _GTID_PURGED_RE.search(line)
                if match:
                    gtid_purged = match.group("gtids")
            if log_file is not None and gtid_purged is not None:
                break

    if log_file is None and gtid_purged is None:
        raise BootstrapError(f"No replication position found in {path}")
    return ReplicationPosition(log_file, log_pos, gtid_purged)


# =============================================================================
# Primary side
# =============================================================================

class BackupProducer:
    """
    Creates the application database and takes the consistent full dump.

    The global read lock taken by ``create_backup()`` stays held on the given
    session until ``unlock()``. Leaving the context manager normally releases
    it if the caller did not; after a failure the lock goes away with the
    session, which the caller closes.
    """

    def __init__(self, config: BootstrapConfig, conn, runner: Callable = run_command):
        self.config = config
        self.conn = conn
        self.runner = runner
        self.locked = False

    def __enter__(self) -> 'BackupProducer':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.locked and exc_type is None:
            self.unlock()
        return False

    def dump_command(self) -> List[str]:
        cmd = ["mysqldump"] + client_args(self.config) + [
            "--all-databases",
            "--routines",
            "--triggers",
            "--events",
            "--flush-privileges",
            "--lock-all-tables",
            "--source-data=1",
        ]
        if self.config.position_mode == POSITION_GTID:
            cmd.append("--set-gtid-purged=ON")
        return cmd

    def create_backup(self):
        """
        Dump all schemas with the replication position embedded.

        Returns:
            Tuple of (artifact path, ReplicationPosition)
        """
        artifact = self.config.artifact_path
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"CREATE DATABASE `{self.config.database}`")
            cursor.execute("FLUSH TABLES WITH READ LOCK")
            self.locked = True
        finally:
            cursor.close()

        artifact.parent.mkdir(parents=True, exist_ok=True)
        print_info(f"Dumping all databases to {artifact}")
        cmd = self.dump_command()
        result = self.runner(cmd, env=client_env(self.config), stdout_path=artifact)
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)

        position = read_dump_position(artifact)
        print_success(f"Backup taken at {position}")
        return artifact, position

    def unlock(self) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UNLOCK TABLES")
        finally:
            cursor.close()
        self.locked = False


def push_backup(config: BootstrapConfig, artifact: Path, ip: str) -> None:
    """
    Copy the artifact into the replica's transfer directory.

    The file is uploaded under a temporary name and renamed once complete, so
    the replica never observes a partial artifact.
    """
    user = config.transfer_user
    final = str(config.transfer_artifact_path)
    partial = final + ".part"

    result = scp_copy(str(artifact), f"{user}@{ip}:{partial}")
    if result.returncode != 0:
        raise CommandError(result.args, result.returncode, result.stderr)

    ok, output = ssh_execute(ip, f"mv {shlex.quote(partial)} {shlex.quote(final)}", user=user)
    if not ok:
        raise BootstrapError(f"Could not finalize backup on {ip}: {output}")


def await_channels(
    config: BootstrapConfig,
    replicas: List[Node],
    probe: Optional[ChannelProbe] = None,
    resolve: Callable[[str], str] = resolve_host,
    wait: Callable = wait_until,
) -> List[Tuple[Node, str]]:
    """
    Wait, replica by replica, until each secure channel accepts the transfer user.

    Returns:
        (replica, resolved IP) pairs in replica order, ready for distribution.
    """
    probe = probe or SshChannelProbe(config.transfer_user)
    targets = []
    for replica in replicas:
        ip = resolve(replica.address)
        print_step(f"Waiting for secure channel on {replica.address} ({ip})...")
        wait(
            lambda: probe.is_open(ip),
            timeout=config.wait_timeout,
            interval=config.poll_interval,
            description=f"secure channel on {replica.address}",
        )
        targets.append((replica, ip))
    return targets


def distribute_backup(
    config: BootstrapConfig,
    artifact: Path,
    targets: List[Tuple[Node, str]],
    push: Callable[[BootstrapConfig, Path, str], None] = push_backup,
) -> int:
    """
    Push the artifact to every confirmed replica, one at a time.

    The first failure aborts the distribution.

    Returns:
        Number of replicas that received the artifact.
    """
    sent = 0
    for replica, ip in targets:
        print_info(f"Sending backup to {config.transfer_user}@{ip}")
        push(config, artifact, ip)
        sent += 1
        print_success(f"Backup delivered to {replica.address}")
    return sent


# =============================================================================
# Replica side
# =============================================================================

class BackupReceiver:
    """Waits for the artifact to land and loads it into the local server."""

    def __init__(
        self,
        config: BootstrapConfig,
        store: Optional[ArtifactStore] = None,
        runner: Callable = run_command,
    ):
        self.config = config
        self.path = config.transfer_artifact_path
        self.store = store or LocalArtifactStore(self.path)
        self.runner = runner

    def await_backup(self, wait: Callable = wait_until) -> Path:
        wait(
            self.store.present,
            timeout=self.config.wait_timeout,
            interval=self.config.poll_interval,
            description=f"backup at {self.path}",
        )
        return self.path

    def existing_schemas(self, conn) -> List[str]:
        cursor = conn.cursor()
        try:
            cursor.execute("SELECT SCHEMA_NAME FROM information_schema.SCHEMATA")
            rows = cursor.fetchall()
        finally:
            cursor.close()
        return sorted(row[0] for row in rows if row[0].lower() not in SYSTEM_SCHEMAS)

    def restore(self, conn) -> None:
        """Replace local state with the artifact's contents."""
        existing = self.existing_schemas(conn)
        if existing:
            if not self.config.allow_nonempty_restore:
                raise RestoreTargetNotEmpty(existing)
            print_info(f"Overwriting existing schemas: {', '.join(existing)}")

        cmd = ["mysql"] + client_args(self.config)
        result = self.runner(cmd, env=client_env(self.config), stdin_path=self.path)
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)

    def read_position(self) -> ReplicationPosition:
        return read_dump_position(self.path)
