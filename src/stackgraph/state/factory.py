"""Build state stores and leases from settings."""

from __future__ import annotations

from typing import TYPE_CHECKING

from stackgraph.core.errors import ConfigurationError
from stackgraph.state.lease import FileLease, Lease, MemoryLease, NullLease, RedisLease
from stackgraph.state.stores import FileStateStore, MemoryStateStore, S3StateStore, StateStore

if TYPE_CHECKING:
    from stackgraph.config.settings import Settings


def create_state_store(settings: Settings, stack: str) -> StateStore:
    if settings.state_backend == "memory":
        return MemoryStateStore()
    if settings.state_backend == "s3":
        if not settings.state_bucket:
            raise ConfigurationError(
                "STACKGRAPH_STATE_BUCKET is required for the s3 state backend",
                {"stack": stack},
            )
        key = f"{settings.state_prefix.strip('/')}/{stack}.json"
        return S3StateStore(settings.state_bucket, key, region=settings.aws_region)
    return FileStateStore(settings.state_dir / f"{stack}.json")


def create_lease(settings: Settings, stack: str) -> Lease:
    if settings.lock_backend == "none":
        return NullLease(stack)
    if settings.lock_backend == "memory":
        return MemoryLease(stack)
    if settings.lock_backend == "redis":
        return RedisLease(settings.redis_url, stack, ttl_seconds=settings.lock_ttl_seconds)
    return FileLease(
        settings.state_dir / f"{stack}.lock",
        stack,
        ttl_seconds=settings.lock_ttl_seconds,
    )
