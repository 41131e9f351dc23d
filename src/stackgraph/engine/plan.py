"""Plan model: ordered resource operations with their prerequisites."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator

from stackgraph.graph.inputs import describe_inputs
from stackgraph.graph.node import ResourceNode
from stackgraph.providers.base import Operation
from stackgraph.state.models import ResourceRecord, Snapshot

if TYPE_CHECKING:
    from stackgraph.graph.dependency_graph import DependencyGraph


@dataclass(frozen=True)
class PlanEntry:
    """One operation on one resource.

    ``after`` lists the plan indexes that must succeed before this entry may
    start. Every index in it is smaller than the entry's own index.
    """

    node: ResourceNode
    operation: Operation
    prior: ResourceRecord | None = None
    replacement: bool = False
    after: tuple[int, ...] = ()
    changed: tuple[str, ...] = ()

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def kind(self) -> str:
        return self.node.kind

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.node.id,
            "kind": self.node.kind,
            "operation": self.operation.value,
        }
        if self.replacement:
            result["replacement"] = True
        if self.changed:
            result["changed"] = list(self.changed)
        if self.operation in (Operation.CREATE, Operation.UPDATE):
            result["inputs"] = describe_inputs(self.node.inputs)
        return result


@dataclass
class Plan:
    """Ordered operations computed by diffing a graph against a snapshot."""

    entries: list[PlanEntry] = field(default_factory=list)
    prior: Snapshot = field(default_factory=Snapshot)
    graph: DependencyGraph | None = None
    create_before_delete: bool = False

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def has_changes(self) -> bool:
        return any(entry.operation is not Operation.NOOP for entry in self.entries)

    def operations(self) -> list[tuple[str, Operation]]:
        return [(entry.node_id, entry.operation) for entry in self.entries]

    def summary(self) -> dict[str, int]:
        """Number of entries per operation."""
        counts = {operation.value: 0 for operation in Operation}
        for entry in self.entries:
            counts[entry.operation.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "create_before_delete": self.create_before_delete,
            "summary": self.summary(),
            "entries": [entry.to_dict() for entry in self.entries],
        }
