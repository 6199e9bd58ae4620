"""
Bootstrap configuration for replboot.

A single BootstrapConfig describes the local node, the rest of the cluster
as this node knows it, the credentials to provision, and every well-known
path the bootstrap touches. It is loaded from a JSON or YAML file and passed
explicitly through the orchestrators.
"""

import json
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigError
from .utils import get_hostname


ROLE_PRIMARY = "primary"
ROLE_REPLICA = "replica"
ROLES = (ROLE_PRIMARY, ROLE_REPLICA)

POSITION_BINLOG = "binlog"
POSITION_GTID = "gtid"
POSITION_MODES = (POSITION_BINLOG, POSITION_GTID)

MYSQL_PORT = 3306
DEFAULT_WAIT_TIMEOUT = 600.0
DEFAULT_POLL_INTERVAL = 2.0

_DATABASE_RE = re.compile(r"^[A-Za-z0-9_$]{1,64}$")
_UNIX_USER_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_MYSQL_USER_RE = re.compile(r"^[A-Za-z0-9_.-]{1,32}$")


@dataclass
class Node:
    """A cluster member: its role, network address and MySQL server id."""
    role: str
    address: str
    server_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Union[str, dict], role: str) -> 'Node':
        """Create a Node from an address string or a dictionary."""
        if isinstance(data, str):
            return cls(role=role, address=data)
        if not data.get('address'):
            raise ConfigError(f"{role} entry is missing 'address': {data!r}")
        return cls(
            role=role,
            address=data['address'],
            server_id=data.get('server_id'),
        )


@dataclass
class BootstrapPaths:
    """Well-known filesystem locations used during bootstrap."""
    primary_cnf: Path = Path("/etc/mysql/my.cnf")
    replica_cnf: Path = Path("/etc/mysql/conf.d/replication.cnf")
    bind_cnf: Path = Path("/etc/mysql/mysql.conf.d/mysqld.cnf")
    binlog_dir: Path = Path("/var/log/mysql")
    backup_dir: Path = Path("/var/backups/replboot")
    transfer_dir: Path = Path("/home/dbtransfer")
    snapshot_dir: Path = Path("/var/backups/replboot/ssh-policy")
    pam_sshd: Path = Path("/etc/pam.d/sshd")
    sshd_config: Path = Path("/etc/ssh/sshd_config")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'BootstrapPaths':
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown path keys: {', '.join(sorted(unknown))}")
        return cls(**{k: Path(v) for k, v in data.items()})


@dataclass
class BootstrapConfig:
    """Represents everything one node needs to run its role's bootstrap."""
    node: Node
    database: str
    root_password: str
    initial_root_password: str = ""
    allow_remote_root: bool = False
    replication_user: str = "replicator"
    replication_password: str = ""
    replicas: List[Node] = field(default_factory=list)
    primary: Optional[Node] = None
    transfer_user: str = "dbtransfer"
    backup_name: str = "replboot-dump.sql"
    mysql_port: int = MYSQL_PORT
    mysql_socket: Optional[str] = "/var/run/mysqld/mysqld.sock"
    mysql_service: str = "mysql"
    ssh_service: str = "ssh"
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    position_mode: str = POSITION_BINLOG
    allow_nonempty_restore: bool = False
    paths: BootstrapPaths = field(default_factory=BootstrapPaths)

    @property
    def role(self) -> str:
        return self.node.role

    @property
    def server_id(self) -> int:
        return self.node.server_id

    @property
    def artifact_path(self) -> Path:
        """Where the primary writes the Backup Artifact."""
        return self.paths.backup_dir / self.backup_name

    @property
    def transfer_artifact_path(self) -> Path:
        """Where the Backup Artifact lands on a replica."""
        return self.paths.transfer_dir / self.backup_name

    def validate(self) -> 'BootstrapConfig':
        """Check the configuration for the local role; raise ConfigError."""
        if self.role not in ROLES:
            raise ConfigError(f"role must be one of {ROLES}, got {self.role!r}")
        if not isinstance(self.server_id, int) or isinstance(self.server_id, bool) \
                or self.server_id < 1:
            raise ConfigError(f"server_id must be a positive integer, got {self.server_id!r}")
        if not _DATABASE_RE.match(self.database or ""):
            raise ConfigError(f"Invalid database name: {self.database!r}")
        if not _UNIX_USER_RE.match(self.transfer_user):
            raise ConfigError(f"Invalid transfer user: {self.transfer_user!r}")
        if not _MYSQL_USER_RE.match(self.replication_user):
            raise ConfigError(f"Invalid replication user: {self.replication_user!r}")
        if self.position_mode not in POSITION_MODES:
            raise ConfigError(
                f"position_mode must be one of {POSITION_MODES}, got {self.position_mode!r}"
            )
        if self.wait_timeout <= 0 or self.poll_interval <= 0:
            raise ConfigError("wait_timeout and poll_interval must be positive")
        if "/" in self.backup_name or not self.backup_name:
            raise ConfigError(f"backup_name must be a plain file name: {self.backup_name!r}")

        if self.role == ROLE_PRIMARY:
            if self.replicas and not self.replication_password:
                raise ConfigError("replication_password is required when replicas are listed")
        else:
            if self.primary is None:
                raise ConfigError("A replica needs the primary address")
            if not self.replication_password:
                raise ConfigError("replication_password is required on a replica")

        seen: Dict[int, str] = {self.server_id: self.node.address}
        for other in self.replicas + ([self.primary] if self.primary else []):
            if other.server_id is None:
                continue
            if other.server_id in seen:
                raise ConfigError(
                    f"server_id {other.server_id} used by both "
                    f"{seen[other.server_id]} and {other.address}"
                )
            seen[other.server_id] = other.address
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BootstrapConfig':
        """Create a BootstrapConfig from a flat dictionary."""
        data = dict(data)
        role = data.pop('role', None)
        node = Node(
            role=role,
            address=data.pop('address', None) or get_hostname(),
            server_id=data.pop('server_id', None),
        )
        replicas = [Node.from_dict(r, ROLE_REPLICA) for r in data.pop('replicas', None) or []]
        primary = data.pop('primary', None)
        paths = BootstrapPaths.from_dict(data.pop('paths', None))

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        for required in ('database', 'root_password'):
            if required not in data:
                raise ConfigError(f"Missing required key: {required}")

        return cls(
            node=node,
            replicas=replicas,
            primary=Node.from_dict(primary, ROLE_PRIMARY) if primary else None,
            paths=paths,
            **data,
        )

    @classmethod
    def load(cls, config_path: Path) -> 'BootstrapConfig':
        """Load configuration from a JSON or YAML file."""
        return cls.from_dict(read_config_file(config_path))

    def to_dict(self) -> Dict[str, Any]:
        """Flatten back into the on-disk dictionary shape."""
        data = asdict(self)
        node = data.pop('node')
        data['role'] = node['role']
        data['address'] = node['address']
        data['server_id'] = node['server_id']
        data['replicas'] = [
            {'address': r['address'], 'server_id': r['server_id']}
            if r['server_id'] is not None else r['address']
            for r in data['replicas']
        ]
        if data['primary'] is not None:
            data['primary'] = data['primary']['address']
        data['paths'] = {k: str(v) for k, v in data['paths'].items()}
        return data

    def save(self, output_path: Path) -> None:
        """Write the configuration as JSON or YAML depending on the suffix."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            if output_path.suffix in (".yml", ".yaml"):
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
            else:
                json.dump(self.to_dict(), f, indent=2)


def read_config_file(config_path: Path) -> Dict[str, Any]:
    """Read a JSON or YAML config file (by suffix) into a dictionary."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Bootstrap configuration not found: {config_path}")

    try:
        with open(config_path) as f:
            if config_path.suffix in (".yml", ".yaml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} does not contain a mapping")
    return data
