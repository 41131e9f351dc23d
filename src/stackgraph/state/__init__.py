"""Snapshot model, persistence backends and plan-level leases."""

from stackgraph.state.factory import create_lease, create_state_store
from stackgraph.state.lease import FileLease, Lease, MemoryLease, NullLease, RedisLease
from stackgraph.state.models import (
    SNAPSHOT_FORMAT_VERSION,
    RecordStatus,
    ResourceRecord,
    Snapshot,
)
from stackgraph.state.stores import (
    FileStateStore,
    MemoryStateStore,
    S3StateStore,
    StateStore,
    dump_snapshot,
    parse_snapshot,
)

__all__ = [
    # Models
    "Snapshot",
    "ResourceRecord",
    "RecordStatus",
    "SNAPSHOT_FORMAT_VERSION",
    # Stores
    "StateStore",
    "MemoryStateStore",
    "FileStateStore",
    "S3StateStore",
    "dump_snapshot",
    "parse_snapshot",
    "create_state_store",
    # Leases
    "Lease",
    "NullLease",
    "MemoryLease",
    "FileLease",
    "RedisLease",
    "create_lease",
]
