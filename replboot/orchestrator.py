"""
Role orchestration for replboot.

Each role runs a fixed sequence of states. A state is reached only when its
step succeeded; any failure aborts the whole sequence with a
StateTransitionError naming the state. There is no retry across states;
the only retry is the bounded poll inside a single wait.

Primary:
    ConfigApplied -> ServiceUp -> PrincipalsGranted -> RootSet -> BackupTaken
    -> ReplicasReachable -> BackupSent -> Unlocked

Replica:
    ConfigApplied -> ChannelOpen -> ServiceUp -> RootSet -> BackupReceived
    -> Restored -> PrimaryReachable -> ReplicationStarted -> ChannelClosed

ChannelClosed is reached on every exit path of the replica sequence.
"""

import enum
from contextlib import contextmanager
from typing import Callable, List, Optional

from .attach import attach_replica
from .backup import BackupProducer, BackupReceiver, await_channels, distribute_backup
from .config import BootstrapConfig
from .credentials import SecureChannelWindow, grant_replication_principals, set_root_credentials
from .db import get_connection
from .errors import StateTransitionError
from .mysqlconf import apply_primary_config, apply_replica_config, bind_all_interfaces
from .poller import ArtifactStore, ChannelProbe, mysql_ping, tcp_port_open, wait_until
from .utils import (
    print_error,
    print_header,
    print_step,
    print_success,
    resolve_host,
    run_command,
    systemctl_restart,
)


class PrimaryState(enum.Enum):
    CONFIG_APPLIED = "ConfigApplied"
    SERVICE_UP = "ServiceUp"
    PRINCIPALS_GRANTED = "PrincipalsGranted"
    ROOT_SET = "RootSet"
    BACKUP_TAKEN = "BackupTaken"
    REPLICAS_REACHABLE = "ReplicasReachable"
    BACKUP_SENT = "BackupSent"
    UNLOCKED = "Unlocked"


class ReplicaState(enum.Enum):
    CONFIG_APPLIED = "ConfigApplied"
    CHANNEL_OPEN = "ChannelOpen"
    SERVICE_UP = "ServiceUp"
    ROOT_SET = "RootSet"
    BACKUP_RECEIVED = "BackupReceived"
    RESTORED = "Restored"
    PRIMARY_REACHABLE = "PrimaryReachable"
    REPLICATION_STARTED = "ReplicationStarted"
    CHANNEL_CLOSED = "ChannelClosed"


class RoleOrchestrator:
    """
    Shared plumbing for both roles.

    Every external collaborator can be replaced: ``connect(password)`` opens
    a root session, ``wait`` is the readiness poller, ``restart_service``
    restarts a systemd unit, ``resolve`` maps names to IPs and ``runner``
    executes the mysql/mysqldump clients.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        connect: Optional[Callable] = None,
        wait: Callable = wait_until,
        restart_service: Callable[[str], None] = systemctl_restart,
        resolve: Callable[[str], str] = resolve_host,
        runner: Callable = run_command,
    ):
        self.config = config
        self.connect = connect or (lambda password: get_connection(config, password))
        self.wait = wait
        self.restart_service = restart_service
        self.resolve = resolve
        self.runner = runner
        self.states: List[enum.Enum] = []
        self.conn = None

    @contextmanager
    def transition(self, state):
        print_step(f"{state.value}...")
        try:
            yield
        except StateTransitionError:
            raise
        except Exception as e:
            print_error(f"{state.value} failed: {e}")
            raise StateTransitionError(state, e) from e
        self.states.append(state)
        print_success(state.value)

    def start_service(self) -> None:
        """Restart MySQL so patched config applies, wait for it, open a session."""
        cfg = self.config
        self.restart_service(cfg.mysql_service)
        self.wait(
            mysql_ping(cfg),
            timeout=cfg.wait_timeout,
            interval=cfg.poll_interval,
            description="local MySQL service",
        )
        self.conn = self.connect(cfg.initial_root_password)

    def close_connection(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


class PrimaryBootstrap(RoleOrchestrator):
    """Provision the primary and hand a consistent backup to every replica."""

    def __init__(self, config: BootstrapConfig, probe: Optional[ChannelProbe] = None,
                 push: Optional[Callable] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.probe = probe
        self.push = push
        self.granted_ips: List[str] = []
        self.confirmed = 0
        self.sent = 0
        self.position = None

    def run(self) -> List[PrimaryState]:
        cfg = self.config
        print_header(f"Bootstrap primary (server-id {cfg.server_id})")

        with self.transition(PrimaryState.CONFIG_APPLIED):
            apply_primary_config(cfg)
            bind_all_interfaces(cfg)

        try:
            with self.transition(PrimaryState.SERVICE_UP):
                self.start_service()

            with self.transition(PrimaryState.PRINCIPALS_GRANTED):
                self.granted_ips = grant_replication_principals(
                    self.conn,
                    cfg.replicas,
                    cfg.replication_user,
                    cfg.replication_password,
                    resolve=self.resolve,
                )

            with self.transition(PrimaryState.ROOT_SET):
                set_root_credentials(self.conn, cfg.root_password, cfg.allow_remote_root)

            with BackupProducer(cfg, self.conn, runner=self.runner) as producer:
                with self.transition(PrimaryState.BACKUP_TAKEN):
                    artifact, self.position = producer.create_backup()

                if cfg.replicas:
                    with self.transition(PrimaryState.REPLICAS_REACHABLE):
                        targets = await_channels(
                            cfg, cfg.replicas, probe=self.probe,
                            resolve=self.resolve, wait=self.wait,
                        )
                        self.confirmed = len(targets)

                    with self.transition(PrimaryState.BACKUP_SENT):
                        kwargs = {"push": self.push} if self.push else {}
                        self.sent = distribute_backup(cfg, artifact, targets, **kwargs)

                with self.transition(PrimaryState.UNLOCKED):
                    producer.unlock()
        finally:
            self.close_connection()

        print_success(f"Primary ready, {self.sent} replica(s) seeded at {self.position}")
        return self.states


class ReplicaBootstrap(RoleOrchestrator):
    """Receive the primary's backup through a short-lived channel and attach."""

    def __init__(self, config: BootstrapConfig, store: Optional[ArtifactStore] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.store = store
        self.window = SecureChannelWindow(config, resolve=self.resolve)
        self.primary_ip: Optional[str] = None
        self.position = None

    def run(self) -> List[ReplicaState]:
        cfg = self.config
        print_header(f"Bootstrap replica (server-id {cfg.server_id})")

        failure = None
        try:
            self._run_until_attached()
        except StateTransitionError as e:
            failure = e
            raise
        finally:
            try:
                self._close_channel(failure)
            finally:
                self.close_connection()

        print_success(f"Replica attached to {self.primary_ip} at {self.position}")
        return self.states

    def _close_channel(self, failure: Optional[StateTransitionError]) -> None:
        """Close the SSH window; a close failure never hides an earlier abort."""
        try:
            with self.transition(ReplicaState.CHANNEL_CLOSED):
                self.window.close()
        except StateTransitionError as e:
            if failure is None:
                raise
            raise StateTransitionError(failure.state, failure.cause, cleanup_error=e) from failure

    def _run_until_attached(self) -> None:
        cfg = self.config
        receiver = BackupReceiver(cfg, store=self.store, runner=self.runner)

        with self.transition(ReplicaState.CONFIG_APPLIED):
            apply_replica_config(cfg)
            bind_all_interfaces(cfg)

        with self.transition(ReplicaState.CHANNEL_OPEN):
            self.window.open(cfg.primary.address)

        with self.transition(ReplicaState.SERVICE_UP):
            self.start_service()

        with self.transition(ReplicaState.ROOT_SET):
            set_root_credentials(self.conn, cfg.root_password, cfg.allow_remote_root)

        with self.transition(ReplicaState.BACKUP_RECEIVED):
            receiver.await_backup(wait=self.wait)

        with self.transition(ReplicaState.RESTORED):
            receiver.restore(self.conn)
            self.position = receiver.read_position()

        with self.transition(ReplicaState.PRIMARY_REACHABLE):
            self.primary_ip = self.resolve(cfg.primary.address)
            self.wait(
                tcp_port_open(self.primary_ip, cfg.mysql_port),
                timeout=cfg.wait_timeout,
                interval=cfg.poll_interval,
                description=f"primary MySQL at {self.primary_ip}:{cfg.mysql_port}",
            )

        with self.transition(ReplicaState.REPLICATION_STARTED):
            self.position = attach_replica(self.conn, cfg, self.primary_ip, self.position)


def setup_master(config: BootstrapConfig, **kwargs) -> List[PrimaryState]:
    """Run the primary bootstrap sequence to completion or raise."""
    return PrimaryBootstrap(config, **kwargs).run()


def setup_replica(config: BootstrapConfig, **kwargs) -> List[ReplicaState]:
    """Run the replica bootstrap sequence; the SSH window is always closed."""
    return ReplicaBootstrap(config, **kwargs).run()
