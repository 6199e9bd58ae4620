#!/usr/bin/env python3
"""
Command-line interface for replboot.

Usage:
    replboot init <output> --role primary --server-id 1 --database app ...
    replboot master --config bootstrap.json
    replboot replica --config bootstrap.json
    replboot status --config bootstrap.json

Exit status:
    0    bootstrap completed
    1    bootstrap failed (including readiness timeouts)
    2    invalid usage or configuration
    130  interrupted
"""

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import mysql.connector

from . import __version__
from .attach import replication_status, source_status
from .config import (
    BootstrapConfig,
    POSITION_MODES,
    ROLE_PRIMARY,
    ROLE_REPLICA,
    ROLES,
    read_config_file,
)
from .db import get_connection
from .errors import BootstrapError, ConfigError
from .orchestrator import setup_master, setup_replica
from .utils import (
    Colors,
    print_error,
    print_header,
    print_success,
    print_warning,
)


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def add_override_arguments(parser: argparse.ArgumentParser) -> None:
    """Flags shared by init, master and replica; they override file values."""
    parser.add_argument('--server-id', type=int, help='MySQL server-id of this node')
    parser.add_argument('--address', help='Address of this node (default: hostname)')
    parser.add_argument('--database', help='Application database name')
    parser.add_argument('--root-password', help='Root password to set on this node')
    parser.add_argument('--initial-root-password',
                        help='Root password before bootstrap (default: empty)')
    parser.add_argument('--allow-remote-root', action='store_true', default=None,
                        help="Create 'root'@'%%' with full privileges")
    parser.add_argument('--replication-user', help='Replication account name')
    parser.add_argument('--replication-password', help='Replication account password')
    parser.add_argument('--replica', action='append', dest='replicas', metavar='HOST',
                        help='Replica address (primary only, repeatable)')
    parser.add_argument('--primary', help='Primary address (replica only)')
    parser.add_argument('--transfer-user', help='OS account receiving the backup')
    parser.add_argument('--timeout', type=float, dest='wait_timeout',
                        help='Readiness ceiling in seconds (default: 600)')
    parser.add_argument('--interval', type=float, dest='poll_interval',
                        help='Readiness poll interval in seconds (default: 2)')
    parser.add_argument('--position-mode', choices=POSITION_MODES,
                        help='How replicas find their start position (default: binlog)')
    parser.add_argument('--allow-nonempty-restore', action='store_true', default=None,
                        help='Let a replica restore over existing schemas')


_OVERRIDE_KEYS = (
    'server_id', 'address', 'database', 'root_password', 'initial_root_password',
    'allow_remote_root', 'replication_user', 'replication_password', 'replicas',
    'primary', 'transfer_user', 'wait_timeout', 'poll_interval', 'position_mode',
    'allow_nonempty_restore',
)


def build_config(args: argparse.Namespace, role: Optional[str]) -> BootstrapConfig:
    """Merge the config file (if any) with command-line overrides."""
    data: Dict[str, Any] = {}
    if getattr(args, 'config', None):
        data = read_config_file(args.config)

    for key in _OVERRIDE_KEYS:
        value = getattr(args, key, None)
        if value is not None:
            data[key] = value

    if role is not None:
        if data.get('role', role) != role:
            raise ConfigError(f"Configuration is for a {data['role']}, not a {role}")
        data['role'] = role

    return BootstrapConfig.from_dict(data).validate()


def require_root() -> None:
    if os.geteuid() != 0:
        raise ConfigError("Bootstrap must run as root (it edits MySQL and SSH configuration)")


# =============================================================================
# Commands
# =============================================================================

def cmd_init(args: argparse.Namespace) -> int:
    config = build_config(args, args.role)
    output = Path(args.output)
    if output.exists() and not args.force:
        raise ConfigError(f"{output} already exists (use --force to overwrite)")
    config.save(output)
    print_success(f"Bootstrap configuration written to {output}")
    print(f"  Role: {config.role} (server-id {config.server_id})")
    if config.role == ROLE_PRIMARY:
        print(f"  Replicas: {', '.join(r.address for r in config.replicas) or 'none'}")
    else:
        print(f"  Primary: {config.primary.address}")
    return EXIT_OK


def cmd_master(args: argparse.Namespace) -> int:
    config = build_config(args, ROLE_PRIMARY)
    require_root()
    setup_master(config)
    return EXIT_OK


def cmd_replica(args: argparse.Namespace) -> int:
    config = build_config(args, ROLE_REPLICA)
    require_root()
    setup_replica(config)
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    config = build_config(args, None)
    print_header(f"Replication Status ({config.role})")

    conn = get_connection(config, config.root_password)
    try:
        if config.role == ROLE_PRIMARY:
            status = source_status(conn)
            if status:
                print(f"  Binary log: {status.get('File')}:{status.get('Position')}")
                if status.get('Executed_Gtid_Set'):
                    print(f"  GTIDs: {status['Executed_Gtid_Set']}")
            else:
                print_warning("Binary logging is not enabled")
            return EXIT_OK

        status = replication_status(conn)
    finally:
        conn.close()

    if status is None:
        print_warning("Replication is not configured on this node")
        return EXIT_FAILED

    for name, value in status.items():
        if name.endswith("_Running"):
            color = Colors.GREEN if value == "Yes" else Colors.RED
            print(f"  {name}: {color}{value}{Colors.NC}")
        elif value not in (None, ""):
            print(f"  {name}: {value}")
    healthy = status["Replica_IO_Running"] == "Yes" and status["Replica_SQL_Running"] == "Yes"
    return EXIT_OK if healthy else EXIT_FAILED


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replboot",
        description="Bootstrap a MySQL primary/replica cluster from a cold start",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init primary.json --role primary --server-id 1 --database app \\
      --root-password s3cret --replication-password r3pl --replica db2 --replica db3
  %(prog)s master --config primary.json
  %(prog)s replica --config replica.json --timeout 900
  %(prog)s status --config replica.json
        """
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest='command', required=True)

    init = subparsers.add_parser('init', help='Write a bootstrap configuration file')
    init.add_argument('output', help='Output path (.json, .yml or .yaml)')
    init.add_argument('--role', choices=ROLES, required=True, help='Role of this node')
    init.add_argument('--force', action='store_true', help='Overwrite an existing file')
    add_override_arguments(init)
    init.set_defaults(func=cmd_init)

    for name, func, help_text in (
        ('master', cmd_master, 'Bootstrap this node as the primary'),
        ('replica', cmd_replica, 'Bootstrap this node as a replica'),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--config', '-c', type=Path, help='Bootstrap configuration file')
        add_override_arguments(sub)
        sub.set_defaults(func=func)

    status = subparsers.add_parser('status', help='Show replication status of this node')
    status.add_argument('--config', '-c', type=Path, required=True,
                        help='Bootstrap configuration file')
    status.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        return args.func(args)
    except ConfigError as e:
        print_error(str(e))
        return EXIT_USAGE
    except BootstrapError as e:
        print_error(f"Bootstrap failed: {e}")
        return EXIT_FAILED
    except mysql.connector.Error as e:
        print_error(f"MySQL error: {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        print_error("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
