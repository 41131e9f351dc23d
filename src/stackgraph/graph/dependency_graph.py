"""Dependency graph of declared resources."""

from __future__ import annotations

import heapq
from collections import deque
from typing import Any, Callable, Iterable, Iterator, Mapping

import structlog

from stackgraph.core.errors import (
    CycleError,
    DanglingDependencyError,
    DuplicateIdError,
    ValidationError,
)
from stackgraph.graph.deferred import DeferredValue
from stackgraph.graph.inputs import InputValue, to_input, unsourced_references
from stackgraph.graph.node import Dependency, ResourceGroup, ResourceNode
from stackgraph.providers.base import ResourceSchema, SchemaLookup

logger = structlog.get_logger()


class DependencyGraph:
    """
    Owns declared resources and the edges between them.

    Edges run from producer to consumer and are the union of explicit
    ``depends_on`` ids and implicit edges inferred from output references in a
    node's inputs. Explicit dependencies may name ids that are declared later;
    those edges stay pending until the target appears, and ``validate`` rejects
    any that never do.

    The edge relation is kept acyclic on every insertion, so a failed
    ``add_node`` leaves the graph exactly as it was.
    """

    def __init__(self, schemas: SchemaLookup, *, name: str = "stack") -> None:
        self.name = name
        self._schemas = schemas
        self._nodes: dict[str, ResourceNode] = {}
        self._order: dict[str, int] = {}
        self._dependencies: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}
        self._pending: dict[str, list[str]] = {}
        self._exports: dict[str, InputValue] = {}
        self._groups: dict[str, ResourceGroup] = {}

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def get(self, node_id: str) -> ResourceNode | None:
        return self._nodes.get(node_id)

    def schema(self, kind: str) -> ResourceSchema:
        return self._schemas.schema(kind)

    @property
    def exports(self) -> dict[str, InputValue]:
        return dict(self._exports)

    @property
    def groups(self) -> dict[str, ResourceGroup]:
        return dict(self._groups)

    def group(self, group_id: str, members: Iterable[Dependency]) -> ResourceGroup:
        """
        Register a named group of resources.

        Dependents that list the group in ``depends_on`` wait for every
        member. Members may be resources, ids declared later, or other groups,
        which are flattened into their members. A group must exist before any
        resource depends on it.
        """
        if not group_id:
            raise ValueError("Group id is required")
        if group_id in self._nodes or group_id in self._groups:
            raise DuplicateIdError(group_id)
        if group_id in self._pending:
            raise ValidationError(
                f"Group '{group_id}' is declared after resources that depend on it",
                {"group": group_id, "consumers": list(self._pending[group_id])},
            )
        ids: list[str] = []
        for member in members:
            if isinstance(member, ResourceGroup):
                ids.extend(member.members)
            elif isinstance(member, ResourceNode):
                ids.append(member.id)
            else:
                ids.append(str(member))
        group = ResourceGroup(group_id, self._expand(ids))
        self._groups[group_id] = group
        logger.debug("group_declared", group=group_id, members=len(group.members))
        return group

    def _expand(self, ids: Iterable[str]) -> tuple[str, ...]:
        expanded: dict[str, None] = {}
        for node_id in ids:
            group = self._groups.get(node_id)
            expanded.update(dict.fromkeys(group.members if group is not None else (node_id,)))
        return tuple(expanded)

    def declare(
        self,
        node_id: str,
        kind: str,
        inputs: Mapping[str, Any] | None = None,
        depends_on: Iterable[Dependency] = (),
    ) -> ResourceNode:
        """Create a node for ``kind`` and register it with this graph."""
        node = ResourceNode(node_id, kind, inputs, depends_on, schema=self._schemas.schema(kind))
        self.add_node(node)
        return node

    def add_node(self, node: ResourceNode) -> None:
        """Insert ``node`` and record its explicit and implicit edges."""
        if node.id in self._nodes or node.id in self._groups:
            raise DuplicateIdError(node.id)
        schema = self._schemas.schema(node.kind)

        orphans = unsourced_references(node.inputs)
        if orphans:
            raise ValidationError(
                f"Resource '{node.id}' references values no declared resource produces: "
                f"{', '.join(orphans)}",
                {"node_id": node.id},
            )

        explicit = self._expand(node.explicit_depends_on)
        deps = tuple(dict.fromkeys([*explicit, *node.implicit_depends_on]))
        if node.id in deps:
            raise CycleError(node.id, [node.id, node.id])

        present = [dep for dep in deps if dep in self._nodes]
        missing = [dep for dep in deps if dep not in self._nodes]
        waiting = self._pending.get(node.id, [])

        cycle = self._find_cycle(node.id, present, waiting)
        if cycle is not None:
            raise CycleError(node.id, cycle)

        node.bind_schema(schema)
        node.explicit_depends_on = explicit
        self._nodes[node.id] = node
        self._order[node.id] = len(self._order)
        self._dependencies[node.id] = list(present)
        self._dependents[node.id] = []
        for dep in present:
            self._dependents[dep].append(node.id)
        for dep in missing:
            self._pending.setdefault(dep, []).append(node.id)
        for consumer in self._pending.pop(node.id, []):
            self._dependencies[consumer].append(node.id)
            self._dependents[node.id].append(consumer)

        logger.debug(
            "resource_declared",
            node_id=node.id,
            kind=node.kind,
            dependencies=len(deps),
            pending=len(missing),
        )

    def _find_cycle(
        self, node_id: str, producers: list[str], consumers: list[str]
    ) -> list[str] | None:
        """Return a cycle path if a consumer waiting on ``node_id`` reaches a producer."""
        if not producers or not consumers:
            return None
        targets = set(producers)
        for consumer in consumers:
            path = self._path_to_any(consumer, targets)
            if path is not None:
                return [node_id, *path, node_id]
        return None

    def _path_to_any(self, start: str, targets: set[str]) -> list[str] | None:
        parents: dict[str, str | None] = {start: None}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current in targets:
                path = [current]
                while (parent := parents[path[-1]]) is not None:
                    path.append(parent)
                return list(reversed(path))
            for nxt in self._dependents.get(current, ()):
                if nxt not in parents:
                    parents[nxt] = current
                    queue.append(nxt)
        return None

    def validate(self) -> None:
        """Raise ``DanglingDependencyError`` if any dependency is still undeclared."""
        if self._pending:
            raise DanglingDependencyError(
                {target: list(consumers) for target, consumers in self._pending.items()}
            )

    def export(self, name: str, value: DeferredValue[Any] | Any) -> None:
        """Register a stack output, reported once the graph is applied.

        ``value`` may nest deferred values inside dicts and lists, like inputs.
        """
        self._exports[name] = to_input(value, f"exports.{name}")

    def dependencies(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._dependencies.get(node_id, ()))

    def dependents(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._dependents.get(node_id, ()))

    def descendants(self, node_id: str) -> set[str]:
        """All nodes transitively depending on ``node_id``."""
        seen: set[str] = set()
        queue = deque(self._dependents.get(node_id, ()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents.get(current, ()))
        return seen

    def edges(self) -> list[tuple[str, str]]:
        """Active (producer, consumer) edges in declaration order of consumers."""
        return [(dep, node_id) for node_id in self._nodes for dep in self._dependencies[node_id]]

    def topological_order(self) -> list[ResourceNode]:
        """Kahn's algorithm; ready nodes are taken in declaration order."""
        indegree = {node_id: len(deps) for node_id, deps in self._dependencies.items()}
        return self._kahn(indegree, self._dependents, lambda node_id: self._order[node_id])

    def reverse_topological_order(self) -> list[ResourceNode]:
        """Kahn's algorithm over reversed edges; later declarations go first on ties."""
        indegree = {node_id: len(deps) for node_id, deps in self._dependents.items()}
        return self._kahn(indegree, self._dependencies, lambda node_id: -self._order[node_id])

    def _kahn(
        self,
        indegree: dict[str, int],
        successors: dict[str, list[str]],
        key: Callable[[str], int],
    ) -> list[ResourceNode]:
        heap = [(key(node_id), node_id) for node_id, degree in indegree.items() if degree == 0]
        heapq.heapify(heap)
        ordered: list[ResourceNode] = []
        while heap:
            _, node_id = heapq.heappop(heap)
            ordered.append(self._nodes[node_id])
            for nxt in successors[node_id]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(heap, (key(nxt), nxt))
        return ordered
