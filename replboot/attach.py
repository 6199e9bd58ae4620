"""
Replication attach for replboot.

Points a freshly restored replica at the primary. The starting position
always comes from the dump: binlog mode passes the coordinates recorded in
its header, GTID mode asks the server to auto-position from the restored
GTID set.
"""

from typing import Any, Dict, Optional

import mysql.connector

from .backup import ReplicationPosition
from .config import BootstrapConfig, POSITION_GTID
from .db import query_one
from .errors import BootstrapError
from .utils import print_info, print_success


REPLICA_STATUS_FIELDS = (
    "Source_Host",
    "Source_Log_File",
    "Read_Source_Log_Pos",
    "Exec_Source_Log_Pos",
    "Replica_IO_Running",
    "Replica_SQL_Running",
    "Seconds_Behind_Source",
    "Last_IO_Error",
    "Last_SQL_Error",
)


def change_source_statement(
    config: BootstrapConfig,
    primary_ip: str,
    position: ReplicationPosition,
):
    """
    Build the CHANGE REPLICATION SOURCE statement and its parameters.

    Setting SOURCE_HOST resets the server's log coordinates, so binlog mode
    repeats the coordinates recorded in the dump.
    """
    options = [
        "SOURCE_HOST = %s",
        "SOURCE_PORT = %s",
        "SOURCE_USER = %s",
        "SOURCE_PASSWORD = %s",
        "GET_SOURCE_PUBLIC_KEY = 1",
    ]
    params = [primary_ip, config.mysql_port, config.replication_user, config.replication_password]
    if config.position_mode == POSITION_GTID:
        options.append("SOURCE_AUTO_POSITION = 1")
    else:
        if position.log_file is None:
            raise BootstrapError("Backup carries no binary log coordinates to replicate from")
        options += ["SOURCE_LOG_FILE = %s", "SOURCE_LOG_POS = %s"]
        params += [position.log_file, position.log_pos]
    return "CHANGE REPLICATION SOURCE TO " + ", ".join(options), tuple(params)


def attach_replica(
    conn,
    config: BootstrapConfig,
    primary_ip: str,
    position: ReplicationPosition,
) -> ReplicationPosition:
    """
    Stop, repoint and start replication.

    Returns:
        The position replication starts from, i.e. the one embedded in the dump.
    """
    statement, params = change_source_statement(config, primary_ip, position)
    cursor = conn.cursor()
    try:
        cursor.execute("STOP REPLICA")
        cursor.execute(statement, params)
        cursor.execute("START REPLICA")
    finally:
        cursor.close()

    print_info(f"Replicating from {primary_ip}:{config.mysql_port} at {position}")
    print_success("Replication started")
    return position


def replication_status(conn) -> Optional[Dict[str, Any]]:
    """Selected SHOW REPLICA STATUS fields, or None if not a replica."""
    row = query_one(conn, "SHOW REPLICA STATUS")
    if not row:
        return None
    return {name: row.get(name) for name in REPLICA_STATUS_FIELDS}


def source_status(conn) -> Optional[Dict[str, Any]]:
    """The primary's current binary log file and position."""
    try:
        return query_one(conn, "SHOW BINARY LOG STATUS")
    except mysql.connector.Error:
        # Servers before 8.2 only know the older statement.
        return query_one(conn, "SHOW MASTER STATUS")
