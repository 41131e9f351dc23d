"""
Plan-level exclusive leases.

Only one apply may write a stack's snapshot at a time. A lease is acquired
before the snapshot is re-read for an apply and released after the new
snapshot is saved. Acquisition never waits: contention raises
``StateLockedError`` immediately.
"""

from __future__ import annotations

import json
import os
import socket
import time
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Protocol
from uuid import uuid4

import redis.asyncio as aioredis
import structlog

from stackgraph.core.errors import StateLockedError

logger = structlog.get_logger()

_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class Lease(Protocol):
    stack: str

    async def acquire(self, owner: str) -> None: ...

    async def release(self, owner: str) -> None: ...

    def hold(self, owner: str | None = None) -> AbstractAsyncContextManager[str]: ...


class _LeaseBase:
    stack: str

    async def acquire(self, owner: str) -> None:
        raise NotImplementedError

    async def release(self, owner: str) -> None:
        raise NotImplementedError

    @asynccontextmanager
    async def hold(self, owner: str | None = None) -> AsyncIterator[str]:
        owner = owner or default_owner()
        await self.acquire(owner)
        logger.debug("lease_acquired", stack=self.stack, owner=owner)
        try:
            yield owner
        finally:
            await self.release(owner)
            logger.debug("lease_released", stack=self.stack, owner=owner)


class NullLease(_LeaseBase):
    """No locking; for single-user local workflows."""

    def __init__(self, stack: str) -> None:
        self.stack = stack

    async def acquire(self, owner: str) -> None:
        return None

    async def release(self, owner: str) -> None:
        return None


class MemoryLease(_LeaseBase):
    """In-process lease."""

    def __init__(self, stack: str) -> None:
        self.stack = stack
        self.holder: str | None = None

    async def acquire(self, owner: str) -> None:
        if self.holder is not None:
            raise StateLockedError(self.stack, self.holder)
        self.holder = owner

    async def release(self, owner: str) -> None:
        if self.holder == owner:
            self.holder = None


class FileLease(_LeaseBase):
    """Lock file created exclusively next to the state file."""

    def __init__(self, path: Path, stack: str, *, ttl_seconds: int | None = None) -> None:
        self.path = Path(path)
        self.stack = stack
        self._ttl = ttl_seconds

    def _read_holder(self) -> str | None:
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError):
            return None
        return data.get("owner")

    def _is_stale(self) -> bool:
        if self._ttl is None:
            return False
        try:
            age = time.time() - self.path.stat().st_mtime
        except OSError:
            return False
        return age > self._ttl

    async def acquire(self, owner: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists() and self._is_stale():
            logger.warning("stale_lease_broken", stack=self.stack, holder=self._read_holder())
            self.path.unlink(missing_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise StateLockedError(self.stack, self._read_holder()) from None
        with os.fdopen(fd, "w") as handle:
            json.dump({"owner": owner, "stack": self.stack, "acquired_at": time.time()}, handle)

    async def release(self, owner: str) -> None:
        if self._read_holder() == owner:
            self.path.unlink(missing_ok=True)


class RedisLease(_LeaseBase):
    """Lease stored as a Redis key with a TTL, released only by its owner."""

    def __init__(
        self,
        redis_url: str,
        stack: str,
        *,
        ttl_seconds: int = 3600,
        redis_client: aioredis.Redis | None = None,
    ) -> None:
        self.stack = stack
        self.key = f"stackgraph:lease:{stack}"
        self._ttl = ttl_seconds
        self._redis_url = redis_url
        self._client: aioredis.Redis | None = redis_client

    async def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def acquire(self, owner: str) -> None:
        client = await self._get_client()
        acquired = await client.set(self.key, owner, nx=True, ex=self._ttl)
        if not acquired:
            holder = await client.get(self.key)
            raise StateLockedError(self.stack, holder)

    async def release(self, owner: str) -> None:
        client = await self._get_client()
        released = await client.eval(_RELEASE_SCRIPT, 1, self.key, owner)
        if not released:
            logger.warning("lease_release_skipped", stack=self.stack, owner=owner)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
