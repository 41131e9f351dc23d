"""Snapshot persistence backends."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Protocol

import aioboto3
import structlog
from botocore.exceptions import ClientError

from stackgraph.core.errors import StateStoreError
from stackgraph.state.models import Snapshot

logger = structlog.get_logger()

DEFAULT_STATE_DIR = Path(".stackgraph")


class StateStore(Protocol):
    async def load(self) -> Snapshot: ...

    async def save(self, snapshot: Snapshot) -> None: ...


def dump_snapshot(snapshot: Snapshot) -> str:
    try:
        return json.dumps(snapshot.to_dict(), indent=2, sort_keys=True) + "\n"
    except (TypeError, ValueError) as exc:
        raise StateStoreError(f"Snapshot cannot be serialized: {exc}") from exc


def parse_snapshot(payload: str | bytes, *, source: str) -> Snapshot:
    try:
        data: Any = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("snapshot must be a JSON object")
        return Snapshot.from_dict(data)
    except (ValueError, KeyError, TypeError) as exc:
        raise StateStoreError(
            f"Unreadable snapshot at {source}: {exc}", {"source": source}
        ) from exc


class MemoryStateStore:
    """Keeps the serialized snapshot in memory; used by tests and dry runs."""

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self._payload: str | None = dump_snapshot(snapshot) if snapshot is not None else None
        self.saves = 0

    async def load(self) -> Snapshot:
        if self._payload is None:
            return Snapshot()
        return parse_snapshot(self._payload, source="memory")

    async def save(self, snapshot: Snapshot) -> None:
        self._payload = dump_snapshot(snapshot)
        self.saves += 1


class FileStateStore:
    """JSON snapshot on local disk, replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def load(self) -> Snapshot:
        if not self.path.exists():
            return Snapshot()
        try:
            payload = self.path.read_text()
        except OSError as exc:
            raise StateStoreError(f"Cannot read {self.path}: {exc}") from exc
        return parse_snapshot(payload, source=str(self.path))

    async def save(self, snapshot: Snapshot) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(dump_snapshot(snapshot))
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StateStoreError(f"Cannot write {self.path}: {exc}") from exc
        logger.debug("snapshot_saved", path=str(self.path), resources=len(snapshot))


class S3StateStore:
    """JSON snapshot stored as a single S3 object."""

    def __init__(self, bucket: str, key: str, *, region: str = "us-east-1") -> None:
        self.bucket = bucket
        self.key = key
        self._region = region

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    async def load(self) -> Snapshot:
        session = aioboto3.Session(region_name=self._region)
        try:
            async with session.client("s3") as client:
                response = await client.get_object(Bucket=self.bucket, Key=self.key)
                payload = await response["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                logger.debug("snapshot_not_found", location=self.location)
                return Snapshot()
            raise StateStoreError(f"Cannot read {self.location}: {exc}") from exc
        return parse_snapshot(payload, source=self.location)

    async def save(self, snapshot: Snapshot) -> None:
        session = aioboto3.Session(region_name=self._region)
        try:
            async with session.client("s3") as client:
                await client.put_object(
                    Bucket=self.bucket,
                    Key=self.key,
                    Body=dump_snapshot(snapshot).encode("utf-8"),
                    ContentType="application/json",
                )
        except ClientError as exc:
            raise StateStoreError(f"Cannot write {self.location}: {exc}") from exc
        logger.debug("snapshot_saved", location=self.location, resources=len(snapshot))
