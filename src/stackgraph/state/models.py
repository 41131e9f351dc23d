from __future__ import annotations

import dataclasses
import heapq
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

SNAPSHOT_FORMAT_VERSION = 1


class RecordStatus(StrEnum):
    CREATED = "created"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceRecord:
    """Persisted inputs and outputs of one resource after an apply."""

    id: str
    kind: str
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    external_id: str | None = None
    status: RecordStatus = RecordStatus.CREATED

    @property
    def failed(self) -> bool:
        return self.status is RecordStatus.FAILED

    def with_dependencies(self, dependencies: list[str]) -> ResourceRecord:
        if dependencies == self.dependencies:
            return self
        return dataclasses.replace(self, dependencies=list(dependencies))

    def with_status(self, status: RecordStatus) -> ResourceRecord:
        return dataclasses.replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "dependencies": list(self.dependencies),
            "external_id": self.external_id,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceRecord:
        return cls(
            id=data["id"],
            kind=data["kind"],
            inputs=dict(data.get("inputs") or {}),
            outputs=dict(data.get("outputs") or {}),
            dependencies=list(data.get("dependencies") or []),
            external_id=data.get("external_id"),
            status=RecordStatus(data.get("status", RecordStatus.CREATED.value)),
        )


@dataclass
class Snapshot:
    """Ordered record of every resource known to a stack."""

    records: list[ResourceRecord] = field(default_factory=list)
    version: int = SNAPSHOT_FORMAT_VERSION

    def __len__(self) -> int:
        return len(self.records)

    def get(self, resource_id: str) -> ResourceRecord | None:
        for record in self.records:
            if record.id == resource_id:
                return record
        return None

    def ids(self) -> list[str]:
        return [record.id for record in self.records]

    def dependency_order(self) -> list[ResourceRecord]:
        """
        Records ordered so dependencies come first.

        Dependencies on ids missing from the snapshot are ignored. Ties keep
        record order, and records caught in a (corrupt) cycle are appended last.
        """
        position = {record.id: index for index, record in enumerate(self.records)}
        by_id = {record.id: record for record in self.records}
        indegree: dict[str, int] = {}
        dependents: dict[str, list[str]] = {record.id: [] for record in self.records}
        for record in self.records:
            deps = {dep for dep in record.dependencies if dep in by_id and dep != record.id}
            indegree[record.id] = len(deps)
            for dep in deps:
                dependents[dep].append(record.id)

        heap = [(position[rid], rid) for rid, degree in indegree.items() if degree == 0]
        heapq.heapify(heap)
        ordered: list[ResourceRecord] = []
        while heap:
            _, rid = heapq.heappop(heap)
            ordered.append(by_id[rid])
            for nxt in dependents[rid]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(heap, (position[nxt], nxt))

        placed = {record.id for record in ordered}
        ordered.extend(record for record in self.records if record.id not in placed)
        return ordered

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "resources": [record.to_dict() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        return cls(
            records=[ResourceRecord.from_dict(item) for item in data.get("resources", [])],
            version=int(data.get("version", SNAPSHOT_FORMAT_VERSION)),
        )
