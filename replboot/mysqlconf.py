"""
MySQL configuration patching for replboot.

Role-specific replication settings are written before the MySQL service is
(re)started. The primary block is appended next to the base defaults; the
replica block owns its file and replaces it whole.
"""

import re
from pathlib import Path

from .config import BootstrapConfig, POSITION_GTID


PRIMARY_TEMPLATE = """
# replboot primary settings
[mysqld]
server-id = {server_id}
log_bin = {binlog_dir}/mysql-bin.log
binlog_do_db = {database}
{gtid}"""

REPLICA_TEMPLATE = """# replboot replica settings
[mysqld]
server-id = {server_id}
relay-log = {binlog_dir}/mysql-relay-bin.log
log_bin = {binlog_dir}/mysql-bin.log
binlog_do_db = {database}
{gtid}"""

GTID_LINES = "gtid_mode = ON\nenforce_gtid_consistency = ON\n"

_BIND_RE = re.compile(r"^(\s*)(mysqlx-bind-address|bind-address)(\s*=\s*).*$", re.MULTILINE)
_MYSQLD_HEADER_RE = re.compile(r"^\s*\[mysqld\]\s*$", re.MULTILINE)


def _render(template: str, config: BootstrapConfig) -> str:
    return template.format(
        server_id=config.server_id,
        binlog_dir=config.paths.binlog_dir,
        database=config.database,
        gtid=GTID_LINES if config.position_mode == POSITION_GTID else "",
    )


def apply_primary_config(config: BootstrapConfig) -> Path:
    """
    Append the primary replication block to the primary config file.

    Not idempotent: every call appends another block, so it must run once
    per bootstrap.
    """
    path = config.paths.primary_cnf
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write(_render(PRIMARY_TEMPLATE, config))
    return path


def apply_replica_config(config: BootstrapConfig) -> Path:
    """Overwrite the replica config file with the replica block."""
    path = config.paths.replica_cnf
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_render(REPLICA_TEMPLATE, config))
    return path


def bind_all_interfaces(config: BootstrapConfig) -> Path:
    """Make mysqld listen on every interface instead of loopback only."""
    path = config.paths.bind_cnf
    content = path.read_text() if path.exists() else ""

    content = _BIND_RE.sub(r"\g<1>\g<2>\g<3>0.0.0.0", content)
    if not re.search(r"^\s*bind-address\s*=", content, re.MULTILINE):
        header = _MYSQLD_HEADER_RE.search(content)
        if header:
            content = (
                content[:header.end()] + "\nbind-address = 0.0.0.0" + content[header.end():]
            )
        else:
            if content and not content.endswith("\n"):
                content += "\n"
            content += "[mysqld]\nbind-address = 0.0.0.0\n"

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path
