"""Declared resources and their lifecycle states."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Iterable, Mapping, Union

from stackgraph.core.errors import InvalidStateError, UnknownOutputError
from stackgraph.graph.deferred import DeferredValue, OutputKey
from stackgraph.graph.inputs import InputValue, normalize_inputs, referenced_nodes
from stackgraph.providers.base import ResourceSchema


class NodeState(StrEnum):
    PLANNED = "planned"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({NodeState.CREATED, NodeState.DELETED, NodeState.FAILED})

_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.PLANNED: frozenset(
        {
            NodeState.CREATING,
            NodeState.UPDATING,
            NodeState.DELETING,
            NodeState.CREATED,  # no-op
            NodeState.FAILED,  # dependency failed
        }
    ),
    NodeState.CREATING: frozenset({NodeState.CREATED, NodeState.FAILED}),
    NodeState.UPDATING: frozenset({NodeState.CREATED, NodeState.FAILED}),
    NodeState.DELETING: frozenset({NodeState.DELETED, NodeState.FAILED}),
    NodeState.CREATED: frozenset(),
    NodeState.DELETED: frozenset(),
    NodeState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class ResourceGroup:
    """
    A named set of resources that dependents can wait on as a unit.

    Depending on a group means depending on every member. Members are
    flattened to resource ids when the group is created.
    """

    id: str
    members: tuple[str, ...]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.members


Dependency = Union[str, "ResourceNode", ResourceGroup]


class ResourceNode:
    """One declared unit of infrastructure."""

    def __init__(
        self,
        node_id: str,
        kind: str,
        inputs: Mapping[str, Any] | None = None,
        depends_on: Iterable[Dependency] = (),
        *,
        schema: ResourceSchema | None = None,
    ) -> None:
        if not node_id:
            raise ValueError("Resource id is required")
        self.id = node_id
        self.kind = kind
        self.inputs: dict[str, InputValue] = normalize_inputs(inputs)
        self.explicit_depends_on: tuple[str, ...] = _dependency_ids(depends_on)
        self.implicit_depends_on: tuple[str, ...] = tuple(referenced_nodes(self.inputs))
        self._schema = schema
        self._state = NodeState.PLANNED
        self._outputs: dict[str, DeferredValue[Any]] = {}

    def __repr__(self) -> str:
        return f"ResourceNode({self.id!r}, kind={self.kind!r}, state={self._state.value})"

    @property
    def state(self) -> NodeState:
        return self._state

    @property
    def schema(self) -> ResourceSchema | None:
        return self._schema

    @property
    def depends_on(self) -> tuple[str, ...]:
        """Explicit then implicit dependency ids, without duplicates."""
        merged = dict.fromkeys(self.explicit_depends_on)
        merged.update(dict.fromkeys(self.implicit_depends_on))
        return tuple(merged)

    @property
    def outputs(self) -> dict[str, DeferredValue[Any]]:
        """Deferred outputs requested so far, by name."""
        return dict(self._outputs)

    def bind_schema(self, schema: ResourceSchema) -> None:
        if schema.kind != self.kind:
            raise ValueError(f"Schema for '{schema.kind}' does not match kind '{self.kind}'")
        self._schema = schema

    def output(self, name: str) -> DeferredValue[Any]:
        """Return the deferred value for a named output of this resource."""
        if self._schema is None or name not in self._schema.outputs:
            raise UnknownOutputError(self.id, self.kind, name)
        deferred = self._outputs.get(name)
        if deferred is None:
            deferred = DeferredValue(OutputKey(self.id, name))
            self._outputs[name] = deferred
        return deferred

    def transition(self, state: NodeState) -> None:
        """Move to ``state``; only the executor drives transitions."""
        if state not in _TRANSITIONS[self._state]:
            raise InvalidStateError(
                f"Resource '{self.id}' cannot move from {self._state.value} to {state.value}",
                {"node_id": self.id},
            )
        self._state = state


def _dependency_ids(depends_on: Iterable[Dependency]) -> tuple[str, ...]:
    ids: dict[str, None] = {}
    for dep in depends_on:
        node_id = dep.id if isinstance(dep, (ResourceNode, ResourceGroup)) else str(dep)
        ids.setdefault(node_id, None)
    return tuple(ids)
