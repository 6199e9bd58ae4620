"""
Shared pytest fixtures for replboot tests.

Nothing here touches a real MySQL server, sshd or systemd: connections,
commands, probes and waits are all fakes, and every path lives under
tmp_path.
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from replboot.config import BootstrapConfig, BootstrapPaths, Node
from replboot.errors import WaitTimeout


BINLOG_DUMP = """-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)
--
-- Position to start replication or point-in-time recovery from
--

CHANGE REPLICATION SOURCE TO SOURCE_LOG_FILE='mysql-bin.000003', SOURCE_LOG_POS=157;

--
-- Current Database: `app`
--
"""

GTID_DUMP = """-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)
SET @@SESSION.SQL_LOG_BIN= 0;

--
-- GTID state at the beginning of the backup
--

SET @@GLOBAL.GTID_PURGED=/*!80000 '+'*/ '3e11fa47-71ca-11e1-9e33-c80aa9429562:1-23';

CHANGE REPLICATION SOURCE TO SOURCE_LOG_FILE='mysql-bin.000004', SOURCE_LOG_POS=1532;
"""

PAM_SSHD = "# PAM configuration for the Secure Shell service\n@include common-auth\n"
SSHD_CONFIG = "Include /etc/ssh/sshd_config.d/*.conf\nPermitRootLogin no\nUsePAM yes\n"

SYSTEM_ROWS = [("information_schema",), ("mysql",), ("performance_schema",), ("sys",)]

RESOLVER = {
    "db1": "10.0.0.11",
    "db2": "10.0.0.12",
    "db3": "10.0.0.13",
}


# =============================================================================
# Fakes
# =============================================================================

class FakeCursor:
    """Records statements on its connection and serves canned results."""

    def __init__(self, conn, dictionary=False):
        self.conn = conn
        self.dictionary = dictionary
        self._rows: List[Any] = []

    def execute(self, sql, params=None):
        self.conn.log.append(("sql", sql, params))
        for prefix, error in self.conn.errors.items():
            if sql.startswith(prefix):
                raise error
        self._rows = []
        for prefix, rows in self.conn.results.items():
            if sql.startswith(prefix):
                self._rows = list(rows)
                break

    def fetchall(self):
        return self._rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def close(self):
        pass


class FakeConnection:
    def __init__(self, results: Optional[Dict[str, list]] = None, log: Optional[list] = None):
        self.results = results or {}
        self.errors: Dict[str, Exception] = {}
        self.log = log if log is not None else []
        self.closed = False

    def cursor(self, dictionary=False):
        return FakeCursor(self, dictionary=dictionary)

    def close(self):
        self.closed = True

    @property
    def statements(self) -> List[str]:
        return [entry[1] for entry in self.log if entry[0] == "sql"]

    def executed(self, sql: str):
        """Parameters of every execution of exactly ``sql``."""
        return [entry[2] for entry in self.log if entry[0] == "sql" and entry[1] == sql]


class FakeRunner:
    """Stands in for run_command; writes dump_text when stdout is redirected."""

    def __init__(self, dump_text: str = BINLOG_DUMP, returncode: int = 0):
        self.dump_text = dump_text
        self.returncode = returncode
        self.calls = []

    def __call__(self, cmd, env=None, stdin_path=None, stdout_path=None, **kwargs):
        self.calls.append({"cmd": cmd, "env": env, "stdin_path": stdin_path,
                           "stdout_path": stdout_path})
        if stdout_path is not None:
            Path(stdout_path).write_text(self.dump_text)
        stderr = "" if self.returncode == 0 else "mysqldump: Got error: 1045"
        return subprocess.CompletedProcess(cmd, self.returncode, "", stderr)


class FakeWait:
    """
    Stands in for wait_until.

    Waits whose description contains ``fail_on`` time out; waits matching
    ``evaluate`` call their predicate once so probes and stores are exercised.
    """

    def __init__(self, fail_on: Optional[str] = None,
                 evaluate=("secure channel", "backup at")):
        self.fail_on = fail_on
        self.evaluate = evaluate
        self.descriptions: List[str] = []

    def __call__(self, predicate, timeout=600, interval=2, description="condition"):
        self.descriptions.append(description)
        if self.fail_on and self.fail_on in description:
            raise WaitTimeout(description, timeout)
        if any(key in description for key in self.evaluate):
            if not predicate():
                raise WaitTimeout(description, timeout)
        return 0.0


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingProbe:
    def __init__(self, log: list):
        self.log = log

    def is_open(self, host: str) -> bool:
        self.log.append(("probe", host))
        return True


class PresentStore:
    def present(self) -> bool:
        return True


def fake_resolve(name: str) -> str:
    return RESOLVER.get(name, name)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def paths(tmp_path) -> BootstrapPaths:
    etc = tmp_path / "etc"
    paths = BootstrapPaths(
        primary_cnf=etc / "mysql" / "my.cnf",
        replica_cnf=etc / "mysql" / "conf.d" / "replication.cnf",
        bind_cnf=etc / "mysql" / "mysql.conf.d" / "mysqld.cnf",
        binlog_dir=tmp_path / "log" / "mysql",
        backup_dir=tmp_path / "backups",
        transfer_dir=tmp_path / "home" / "dbtransfer",
        snapshot_dir=tmp_path / "backups" / "ssh-policy",
        pam_sshd=etc / "pam.d" / "sshd",
        sshd_config=etc / "ssh" / "sshd_config",
    )
    paths.pam_sshd.parent.mkdir(parents=True)
    paths.pam_sshd.write_text(PAM_SSHD)
    paths.sshd_config.parent.mkdir(parents=True)
    paths.sshd_config.write_text(SSHD_CONFIG)
    paths.bind_cnf.parent.mkdir(parents=True)
    paths.bind_cnf.write_text("[mysqld]\nuser = mysql\nbind-address = 127.0.0.1\n")
    return paths


@pytest.fixture
def primary_config(paths) -> BootstrapConfig:
    return BootstrapConfig(
        node=Node("primary", "db1", 1),
        database="app",
        root_password="s3cret",
        replication_password="r3pl",
        replicas=[Node("replica", "db2", 2), Node("replica", "db3", 3)],
        wait_timeout=30.0,
        poll_interval=1.0,
        paths=paths,
    ).validate()


@pytest.fixture
def replica_config(paths) -> BootstrapConfig:
    return BootstrapConfig(
        node=Node("replica", "db2", 2),
        database="app",
        root_password="s3cret",
        replication_password="r3pl",
        primary=Node("primary", "db1"),
        wait_timeout=30.0,
        poll_interval=1.0,
        paths=paths,
    ).validate()


@pytest.fixture
def fake_window_commands(monkeypatch):
    """Replace the OS commands the secure channel window runs; record them."""
    calls = []

    def run_command(cmd, **kwargs):
        calls.append(cmd)
        # The transfer user does not exist yet.
        return subprocess.CompletedProcess(cmd, 1, "", "no such user")

    def check_command(cmd, sudo=False, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def systemctl_restart(service):
        calls.append(["systemctl", "restart", service])

    monkeypatch.setattr("replboot.credentials.run_command", run_command)
    monkeypatch.setattr("replboot.credentials.check_command", check_command)
    monkeypatch.setattr("replboot.credentials.systemctl_restart", systemctl_restart)
    return calls
