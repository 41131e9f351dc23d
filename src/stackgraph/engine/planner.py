"""Convergence planning: diff a declared graph against the previous snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from stackgraph.engine.plan import Plan, PlanEntry
from stackgraph.graph.deferred import OutputKey, UnknownValueError
from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.graph.inputs import InputValue, evaluate_inputs
from stackgraph.graph.node import ResourceNode
from stackgraph.providers.base import Operation
from stackgraph.state.models import ResourceRecord, Snapshot

logger = structlog.get_logger()


@dataclass(frozen=True)
class _Decision:
    node: ResourceNode
    operation: Operation
    prior: ResourceRecord | None
    replace: bool = False
    changed: tuple[str, ...] = ()


class ConvergencePlanner:
    """
    Computes the minimal set of operations that converges state to a graph.

    With the default delete-before-create policy every Delete (removed and
    replaced resources) runs first, in reverse dependency order, and every
    Create waits for all of them so freed identifiers can be reused. With
    ``create_before_delete`` the replacement is created first and the old
    resource is deleted once everything that depends on it has moved over.
    """

    def __init__(self, *, create_before_delete: bool = False) -> None:
        self.create_before_delete = create_before_delete

    def plan(self, graph: DependencyGraph, prior: Snapshot) -> Plan:
        graph.validate()
        records = {record.id: record for record in prior.records}
        decisions = self._decide(graph, records)

        replaced = {d.node.id for d in decisions if d.replace}
        removed = [record.id for record in prior.records if record.id not in graph]
        doomed = set(replaced) | set(removed)
        delete_order = [
            record.id for record in reversed(prior.dependency_order()) if record.id in doomed
        ]

        if self.create_before_delete:
            entries = self._create_before_delete(graph, records, decisions, delete_order, replaced)
        else:
            entries = self._delete_before_create(graph, records, decisions, delete_order, replaced)

        plan = Plan(
            entries=entries,
            prior=prior,
            graph=graph,
            create_before_delete=self.create_before_delete,
        )
        logger.info("plan_computed", stack=graph.name, **plan.summary())
        return plan

    def destroy_plan(self, prior: Snapshot) -> Plan:
        """Delete every recorded resource, dependents first."""
        ordered = list(reversed(prior.dependency_order()))
        index = {record.id: i for i, record in enumerate(ordered)}
        entries = []
        for i, record in enumerate(ordered):
            after = tuple(
                sorted(
                    index[other.id]
                    for other in ordered[:i]
                    if record.id in other.dependencies
                )
            )
            entries.append(
                PlanEntry(
                    node=_ghost(record),
                    operation=Operation.DELETE,
                    prior=record,
                    after=after,
                )
            )
        return Plan(entries=entries, prior=prior, create_before_delete=self.create_before_delete)

    def _decide(
        self, graph: DependencyGraph, records: dict[str, ResourceRecord]
    ) -> list[_Decision]:
        unchanged: set[str] = set()

        def lookup(key: OutputKey) -> Any:
            if key.node_id not in unchanged:
                raise UnknownValueError(str(key))
            outputs = records[key.node_id].outputs
            if key.output not in outputs:
                raise UnknownValueError(str(key))
            return outputs[key.output]

        decisions: list[_Decision] = []
        for node in graph.topological_order():
            record = records.get(node.id)
            decision = self._decide_node(node, record, lookup)
            if decision.operation is Operation.NOOP:
                unchanged.add(node.id)
            decisions.append(decision)
        return decisions

    def _decide_node(
        self, node: ResourceNode, record: ResourceRecord | None, lookup: Any
    ) -> _Decision:
        if record is None:
            return _Decision(node, Operation.CREATE, None)
        if record.failed and record.external_id is None:
            return _Decision(node, Operation.CREATE, record)
        if record.kind != node.kind:
            return _Decision(node, Operation.CREATE, record, replace=True, changed=("kind",))

        changed = _changed_keys(node.inputs, record.inputs, lookup)
        replace_keys = node.schema.replace_on_changes if node.schema is not None else frozenset()
        if any(key in replace_keys for key in changed):
            return _Decision(node, Operation.CREATE, record, replace=True, changed=changed)
        if changed or record.failed:
            return _Decision(node, Operation.UPDATE, record, changed=changed)
        return _Decision(node, Operation.NOOP, record)

    def _delete_entries(
        self,
        delete_order: list[str],
        records: dict[str, ResourceRecord],
        replaced: set[str],
        offset: int,
    ) -> tuple[list[PlanEntry], dict[str, int]]:
        index = {node_id: offset + i for i, node_id in enumerate(delete_order)}
        entries = []
        for node_id in delete_order:
            record = records[node_id]
            after = tuple(
                sorted(
                    index[other]
                    for other in delete_order
                    if index[other] < index[node_id] and node_id in records[other].dependencies
                )
            )
            entries.append(
                PlanEntry(
                    node=_ghost(record),
                    operation=Operation.DELETE,
                    prior=record,
                    replacement=node_id in replaced,
                    after=after,
                )
            )
        return entries, index

    def _delete_before_create(
        self,
        graph: DependencyGraph,
        records: dict[str, ResourceRecord],
        decisions: list[_Decision],
        delete_order: list[str],
        replaced: set[str],
    ) -> list[PlanEntry]:
        entries, delete_index = self._delete_entries(delete_order, records, replaced, 0)
        all_deletes = tuple(sorted(delete_index.values()))
        create_index = {d.node.id: len(entries) + i for i, d in enumerate(decisions)}
        for decision in decisions:
            after = {create_index[dep] for dep in graph.dependencies(decision.node.id)}
            if decision.operation is Operation.CREATE:
                after.update(all_deletes)
            entries.append(_entry(decision, tuple(sorted(after))))
        return entries

    def _create_before_delete(
        self,
        graph: DependencyGraph,
        records: dict[str, ResourceRecord],
        decisions: list[_Decision],
        delete_order: list[str],
        replaced: set[str],
    ) -> list[PlanEntry]:
        create_index = {d.node.id: i for i, d in enumerate(decisions)}
        entries = [
            _entry(d, tuple(sorted(create_index[dep] for dep in graph.dependencies(d.node.id))))
            for d in decisions
        ]
        deletes, _ = self._delete_entries(delete_order, records, replaced, len(entries))
        for entry in deletes:
            node_id = entry.node_id
            after = set(entry.after)
            if node_id in replaced:
                after.add(create_index[node_id])
                after.update(create_index[dep] for dep in graph.dependents(node_id))
            after.update(
                create_index[other.id]
                for other in records.values()
                if other.id in create_index and node_id in other.dependencies
            )
            entries.append(
                PlanEntry(
                    node=entry.node,
                    operation=entry.operation,
                    prior=entry.prior,
                    replacement=entry.replacement,
                    after=tuple(sorted(after)),
                )
            )
        return entries


def _entry(decision: _Decision, after: tuple[int, ...]) -> PlanEntry:
    return PlanEntry(
        node=decision.node,
        operation=decision.operation,
        prior=decision.prior,
        replacement=decision.replace,
        after=after,
        changed=decision.changed,
    )


def _ghost(record: ResourceRecord) -> ResourceNode:
    """Stand-in node for a recorded resource that is no longer declared as-is."""
    return ResourceNode(record.id, record.kind, record.inputs)


def _changed_keys(
    declared: dict[str, InputValue], recorded: dict[str, Any], lookup: Any
) -> tuple[str, ...]:
    keys = list(declared) + [key for key in recorded if key not in declared]
    changed = []
    for key in keys:
        if key not in declared or key not in recorded:
            changed.append(key)
            continue
        try:
            value = evaluate_inputs(declared[key], lookup)
        except UnknownValueError:
            changed.append(key)
            continue
        if value != recorded[key]:
            changed.append(key)
    return tuple(changed)
