"""
replboot: MySQL primary/replica cluster bootstrap

Brings a fresh set of MySQL nodes up as one primary and N replicas, seeded
from a single consistent backup of the primary.

Quick Start (Shell):
    replboot init primary.json --role primary --server-id 1 --database app \
        --root-password s3cret --replication-password r3pl --replica db2
    replboot master --config primary.json     # on the primary
    replboot replica --config replica.json    # on each replica, concurrently
    replboot status --config replica.json     # check replication

Python API:
    from replboot import BootstrapConfig, setup_replica
    config = BootstrapConfig.load("replica.json").validate()
    setup_replica(config)
"""

__version__ = "1.0.0"

from .config import BootstrapConfig, BootstrapPaths, Node
from .credentials import SecureChannelWindow
from .errors import BootstrapError, StateTransitionError, WaitTimeout
from .orchestrator import PrimaryState, ReplicaState, setup_master, setup_replica
from .poller import wait_until

__all__ = [
    "BootstrapConfig",
    "BootstrapPaths",
    "BootstrapError",
    "Node",
    "PrimaryState",
    "ReplicaState",
    "SecureChannelWindow",
    "StateTransitionError",
    "WaitTimeout",
    "setup_master",
    "setup_replica",
    "wait_until",
]
