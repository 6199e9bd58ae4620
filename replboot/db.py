"""MySQL connection helpers for replboot."""

from typing import Any, Dict, List, Optional

import mysql.connector

from .config import BootstrapConfig


SYSTEM_SCHEMAS = frozenset({"mysql", "information_schema", "performance_schema", "sys"})


def get_connection(
    config: BootstrapConfig,
    password: str = "",
    host: Optional[str] = None,
) -> mysql.connector.MySQLConnection:
    """Create a root connection to the local server.

    Uses the configured unix socket when there is one and no host is given,
    otherwise TCP to ``host`` (default localhost) on the configured port.
    """
    connect_args = {
        "user": "root",
        "password": password,
        "autocommit": True,
    }

    if host is None and config.mysql_socket:
        connect_args["unix_socket"] = config.mysql_socket
    else:
        connect_args["host"] = host or "localhost"
        connect_args["port"] = config.mysql_port

    return mysql.connector.connect(**connect_args)


def client_args(config: BootstrapConfig) -> List[str]:
    """Common arguments for the mysql / mysqldump command line clients."""
    args = ["--user=root"]
    if config.mysql_socket:
        args.append(f"--socket={config.mysql_socket}")
    return args


def client_env(config: BootstrapConfig) -> Dict[str, str]:
    """Pass the root password through the environment, not argv."""
    return {"MYSQL_PWD": config.root_password}


def query_one(conn, sql: str, params=None) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor(dictionary=True)
    try:
        cursor.execute(sql, params or ())
        return cursor.fetchone()
    finally:
        cursor.close()
