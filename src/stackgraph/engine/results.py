"""Result types for plan execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from stackgraph.core.errors import StackGraphError
from stackgraph.graph.node import NodeState
from stackgraph.providers.base import Operation
from stackgraph.state.models import RecordStatus, ResourceRecord, Snapshot


@dataclass(frozen=True)
class NodeFailure:
    """A runtime error attributed to one resource."""

    node_id: str
    operation: Operation
    error: BaseException

    @property
    def message(self) -> str:
        if isinstance(self.error, StackGraphError):
            return self.error.message
        return str(self.error) or type(self.error).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "operation": self.operation.value,
            "error": type(self.error).__name__,
            "message": self.message,
        }


@dataclass(frozen=True)
class EntryOutcome:
    node_id: str
    operation: Operation
    state: NodeState


@dataclass
class ApplyResult:
    """Result of applying a plan."""

    snapshot: Snapshot
    failures: list[NodeFailure] = field(default_factory=list)
    outcomes: list[EntryOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    provider_calls: int = 0
    exports: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """Whether every entry reached its target state."""
        return not self.failures and not self.skipped and not self.cancelled

    @property
    def failed_ids(self) -> list[str]:
        return [failure.node_id for failure in self.failures]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "provider_calls": self.provider_calls,
            "duration_seconds": round(self.duration_seconds, 3),
            "outcomes": [
                {"id": o.node_id, "operation": o.operation.value, "state": o.state.value}
                for o in self.outcomes
            ],
            "failures": [failure.to_dict() for failure in self.failures],
            "skipped": list(self.skipped),
            "exports": self.exports,
        }


class ResultCollector:
    """Aggregates entry outcomes and the new snapshot during execution."""

    def __init__(self, prior: Snapshot) -> None:
        self._prior = prior
        self._records: dict[str, ResourceRecord] = {r.id: r for r in prior.records}
        self._written: set[str] = set()
        self._order: list[str] = []
        self._failures: list[NodeFailure] = []
        self._outcomes: list[EntryOutcome] = []
        self._skipped: list[str] = []
        self.provider_calls = 0

    def current(self, node_id: str) -> ResourceRecord | None:
        return self._records.get(node_id)

    def claim(self, node_id: str) -> None:
        """Reserve ``node_id``'s position among the declared resources."""
        if node_id not in self._order:
            self._order.append(node_id)

    def write(self, record: ResourceRecord) -> None:
        self._records[record.id] = record
        self._written.add(record.id)

    def remove(self, node_id: str) -> None:
        """Drop a deleted record unless a replacement was written during this apply."""
        if node_id not in self._written:
            self._records.pop(node_id, None)

    def mark_failed(self, node_id: str) -> None:
        record = self._records.get(node_id)
        if record is not None and node_id not in self._written:
            self._records[node_id] = record.with_status(RecordStatus.FAILED)

    def record_outcome(self, node_id: str, operation: Operation, state: NodeState) -> None:
        self._outcomes.append(EntryOutcome(node_id, operation, state))

    def record_failure(self, node_id: str, operation: Operation, error: BaseException) -> None:
        self._failures.append(NodeFailure(node_id, operation, error))
        self._outcomes.append(EntryOutcome(node_id, operation, NodeState.FAILED))

    def record_skipped(self, node_id: str) -> None:
        self._skipped.append(node_id)

    def snapshot(self) -> Snapshot:
        """Declared resources first, in plan order, then untouched prior records."""
        ids = [node_id for node_id in self._order if node_id in self._records]
        placed = set(ids)
        ids.extend(
            r.id for r in self._prior.records if r.id in self._records and r.id not in placed
        )
        placed.update(ids)
        ids.extend(node_id for node_id in self._records if node_id not in placed)
        return Snapshot(records=[self._records[node_id] for node_id in ids])

    def finalize(self, duration: float, *, cancelled: bool = False) -> ApplyResult:
        return ApplyResult(
            snapshot=self.snapshot(),
            failures=list(self._failures),
            outcomes=list(self._outcomes),
            skipped=list(self._skipped),
            provider_calls=self.provider_calls,
            duration_seconds=duration,
            cancelled=cancelled,
        )
