"""End-to-end state machine tests with every external effect faked."""

from dataclasses import replace

import pytest

from replboot.errors import CommandError, StateTransitionError, WaitTimeout
from replboot.orchestrator import (
    PrimaryBootstrap,
    PrimaryState,
    ReplicaBootstrap,
    ReplicaState,
    setup_master,
)

from conftest import (
    BINLOG_DUMP,
    PAM_SSHD,
    SSHD_CONFIG,
    SYSTEM_ROWS,
    FakeConnection,
    FakeRunner,
    FakeWait,
    PresentStore,
    RecordingProbe,
    fake_resolve,
)


ALL_PRIMARY_STATES = list(PrimaryState)
ALL_REPLICA_STATES = list(ReplicaState)


def primary_harness(config, wait=None):
    log = []
    conn = FakeConnection(log=log)
    restarts = []
    connects = []

    def connect(password):
        connects.append(password)
        return conn

    def push(config, artifact, ip):
        log.append(("push", ip))

    bootstrap = PrimaryBootstrap(
        config,
        probe=RecordingProbe(log),
        push=push,
        connect=connect,
        wait=wait or FakeWait(),
        restart_service=restarts.append,
        resolve=fake_resolve,
        runner=FakeRunner(),
    )
    return bootstrap, conn, log, restarts, connects


def replica_harness(config, wait=None, results=None):
    conn = FakeConnection(results=results or {"SELECT SCHEMA_NAME": SYSTEM_ROWS})
    restarts = []
    bootstrap = ReplicaBootstrap(
        config,
        store=PresentStore(),
        connect=lambda password: conn,
        wait=wait or FakeWait(),
        restart_service=restarts.append,
        resolve=fake_resolve,
        runner=FakeRunner(),
    )
    return bootstrap, conn, restarts


def deliver_artifact(config, text=BINLOG_DUMP):
    path = config.transfer_artifact_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


# =============================================================================
# Primary
# =============================================================================

def test_primary_visits_every_state(primary_config):
    bootstrap, conn, log, restarts, connects = primary_harness(primary_config)

    assert bootstrap.run() == ALL_PRIMARY_STATES
    assert restarts == ["mysql"]
    assert connects == [""]
    assert conn.closed
    assert bootstrap.granted_ips == ["10.0.0.12", "10.0.0.13"]


def test_primary_confirms_and_sends_to_every_replica_before_unlock(primary_config):
    bootstrap, conn, log, _, _ = primary_harness(primary_config)
    bootstrap.run()

    events = [e[:2] for e in log]
    lock = events.index(("sql", "FLUSH TABLES WITH READ LOCK"))
    unlock = events.index(("sql", "UNLOCK TABLES"))
    probes = [i for i, e in enumerate(events) if e[0] == "probe"]
    pushes = [i for i, e in enumerate(events) if e[0] == "push"]

    assert bootstrap.confirmed == 2
    assert bootstrap.sent == 2
    assert len(probes) == 2 and len(pushes) == 2
    assert lock < min(probes) and max(probes) < min(pushes) and max(pushes) < unlock
    assert [e[1] for e in events if e[0] == "push"] == ["10.0.0.12", "10.0.0.13"]


def test_primary_grants_before_root_change(primary_config):
    bootstrap, conn, _, _, _ = primary_harness(primary_config)
    bootstrap.run()

    statements = conn.statements
    create = statements.index("CREATE USER %s@%s IDENTIFIED BY %s")
    alter = statements.index(
        "ALTER USER 'root'@'localhost' IDENTIFIED WITH caching_sha2_password BY %s"
    )
    assert create < alter < statements.index("FLUSH TABLES WITH READ LOCK")


def test_primary_without_replicas_skips_distribution(primary_config):
    config = replace(primary_config, replicas=[])
    bootstrap, conn, log, _, _ = primary_harness(config)

    states = bootstrap.run()

    assert PrimaryState.REPLICAS_REACHABLE not in states
    assert PrimaryState.BACKUP_SENT not in states
    assert states[-1] == PrimaryState.UNLOCKED
    assert bootstrap.sent == 0
    assert not any(e[0] in ("probe", "push") for e in log)


def test_primary_config_patches_are_written(primary_config):
    bootstrap, _, _, _, _ = primary_harness(primary_config)
    bootstrap.run()

    assert "server-id = 1" in primary_config.paths.primary_cnf.read_text()
    assert "bind-address = 0.0.0.0" in primary_config.paths.bind_cnf.read_text()


def test_primary_channel_timeout_aborts_and_keeps_lock(primary_config):
    wait = FakeWait(fail_on="secure channel on db3")
    bootstrap, conn, log, _, _ = primary_harness(primary_config, wait=wait)

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == PrimaryState.REPLICAS_REACHABLE
    assert isinstance(excinfo.value.cause, WaitTimeout)
    assert PrimaryState.BACKUP_SENT not in bootstrap.states
    assert not any(e[0] == "push" for e in log)
    assert "UNLOCK TABLES" not in conn.statements
    assert conn.closed


def test_primary_service_timeout_names_state(primary_config):
    bootstrap, _, _, _, _ = primary_harness(primary_config,
                                            wait=FakeWait(fail_on="local MySQL"))

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == PrimaryState.SERVICE_UP
    assert bootstrap.states == [PrimaryState.CONFIG_APPLIED]
    assert "ServiceUp failed" in str(excinfo.value)


def test_setup_master_returns_states(primary_config):
    conn = FakeConnection()
    states = setup_master(
        replace(primary_config, replicas=[]),
        connect=lambda password: conn,
        wait=FakeWait(),
        restart_service=lambda service: None,
        resolve=fake_resolve,
        runner=FakeRunner(),
    )
    assert states[0] == PrimaryState.CONFIG_APPLIED


# =============================================================================
# Replica
# =============================================================================

def test_replica_visits_every_state(replica_config, fake_window_commands):
    deliver_artifact(replica_config)
    bootstrap, conn, restarts = replica_harness(replica_config)

    assert bootstrap.run() == ALL_REPLICA_STATES
    assert restarts == ["mysql"]
    assert bootstrap.primary_ip == "10.0.0.11"
    assert conn.closed


def test_replica_attaches_at_dump_position(replica_config, fake_window_commands):
    deliver_artifact(replica_config)
    bootstrap, conn, _ = replica_harness(replica_config)
    bootstrap.run()

    assert str(bootstrap.position) == "mysql-bin.000003:157"
    change = [s for s in conn.statements if s.startswith("CHANGE REPLICATION SOURCE")]
    assert len(change) == 1
    params = conn.executed(change[0])[0]
    assert params[0] == "10.0.0.11"
    assert "SOURCE_LOG_FILE = %s, SOURCE_LOG_POS = %s" in change[0]
    assert params[-2:] == ("mysql-bin.000003", 157)
    assert conn.statements[-1] == "START REPLICA"


def test_replica_restores_policy_files_on_success(replica_config, fake_window_commands):
    deliver_artifact(replica_config)
    bootstrap, _, _ = replica_harness(replica_config)
    bootstrap.run()

    assert replica_config.paths.pam_sshd.read_text() == PAM_SSHD
    assert replica_config.paths.sshd_config.read_text() == SSHD_CONFIG


def test_replica_primary_timeout_still_closes_channel(replica_config, fake_window_commands):
    deliver_artifact(replica_config)
    wait = FakeWait(fail_on="primary MySQL")
    bootstrap, conn, _ = replica_harness(replica_config, wait=wait)

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.PRIMARY_REACHABLE
    assert ReplicaState.REPLICATION_STARTED not in bootstrap.states
    assert bootstrap.states[-1] == ReplicaState.CHANNEL_CLOSED
    assert replica_config.paths.pam_sshd.read_text() == PAM_SSHD
    assert replica_config.paths.sshd_config.read_text() == SSHD_CONFIG
    assert "START REPLICA" not in conn.statements
    assert conn.closed


def test_replica_close_failure_keeps_original_abort(replica_config, fake_window_commands,
                                                   monkeypatch):
    restarts = []

    def systemctl_restart(service):
        restarts.append(service)
        if len(restarts) > 1:
            raise CommandError(["systemctl", "restart", service], 1, "Job failed")

    monkeypatch.setattr("replboot.credentials.systemctl_restart", systemctl_restart)
    deliver_artifact(replica_config)
    bootstrap, conn, _ = replica_harness(replica_config, wait=FakeWait(fail_on="primary MySQL"))

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.PRIMARY_REACHABLE
    assert isinstance(excinfo.value.cause, WaitTimeout)
    assert excinfo.value.cleanup_error.state == ReplicaState.CHANNEL_CLOSED
    assert "primary MySQL" in str(excinfo.value)
    assert "Secure channel restore incomplete" in str(excinfo.value)
    assert replica_config.paths.sshd_config.read_text() == SSHD_CONFIG
    assert conn.closed


def test_replica_close_failure_after_success_is_reported(replica_config,
                                                          fake_window_commands, monkeypatch):
    restarts = []

    def systemctl_restart(service):
        restarts.append(service)
        if len(restarts) > 1:
            raise CommandError(["systemctl", "restart", service], 1, "Job failed")

    monkeypatch.setattr("replboot.credentials.systemctl_restart", systemctl_restart)
    deliver_artifact(replica_config)
    bootstrap, _, _ = replica_harness(replica_config)

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.CHANNEL_CLOSED
    assert excinfo.value.cleanup_error is None
    assert ReplicaState.REPLICATION_STARTED in bootstrap.states


def test_replica_backup_timeout_still_closes_channel(replica_config, fake_window_commands):
    bootstrap, _, _ = replica_harness(replica_config, wait=FakeWait(fail_on="backup at"))

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.BACKUP_RECEIVED
    assert bootstrap.states[-1] == ReplicaState.CHANNEL_CLOSED
    assert replica_config.paths.sshd_config.read_text() == SSHD_CONFIG


def test_replica_failure_before_channel_open(replica_config, fake_window_commands, monkeypatch):
    def broken(config):
        raise OSError("read-only file system")

    monkeypatch.setattr("replboot.orchestrator.apply_replica_config", broken)
    bootstrap, _, _ = replica_harness(replica_config)

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.CONFIG_APPLIED
    assert bootstrap.states == [ReplicaState.CHANNEL_CLOSED]
    assert fake_window_commands == []


def test_replica_non_empty_target_aborts_restore(replica_config, fake_window_commands):
    deliver_artifact(replica_config)
    bootstrap, _, _ = replica_harness(
        replica_config, results={"SELECT SCHEMA_NAME": SYSTEM_ROWS + [("app",)]}
    )

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.RESTORED
    assert bootstrap.states[-1] == ReplicaState.CHANNEL_CLOSED


def test_replica_channel_open_failure_restores(replica_config, fake_window_commands,
                                                monkeypatch):
    def failing_check(cmd, sudo=False, **kwargs):
        if cmd[0] == "sshd":
            raise CommandError(cmd, 255, "Bad configuration option")
        fake_window_commands.append(cmd)

    monkeypatch.setattr("replboot.credentials.check_command", failing_check)
    bootstrap, _, restarts = replica_harness(replica_config)

    with pytest.raises(StateTransitionError) as excinfo:
        bootstrap.run()

    assert excinfo.value.state == ReplicaState.CHANNEL_OPEN
    assert restarts == []
    assert replica_config.paths.sshd_config.read_text() == SSHD_CONFIG
    assert bootstrap.states == [ReplicaState.CONFIG_APPLIED, ReplicaState.CHANNEL_CLOSED]
