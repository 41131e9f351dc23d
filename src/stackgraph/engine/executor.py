"""Execution engine: runs plan entries as a dependency-ordered task DAG."""

from __future__ import annotations

import asyncio
import heapq
import time
from collections import deque
from typing import Any

import structlog

from stackgraph.core.errors import (
    DependencyFailedError,
    InvalidStateError,
    ProviderError,
    StackGraphError,
    ValidationError,
)
from stackgraph.engine.options import ExecutorOptions
from stackgraph.engine.plan import Plan, PlanEntry
from stackgraph.engine.results import ApplyResult, ResultCollector
from stackgraph.graph.deferred import UnknownValueError
from stackgraph.graph.inputs import (
    InputValue,
    check_json_value,
    normalize_value,
    resolve_inputs,
    settled_value,
)
from stackgraph.graph.node import NodeState, ResourceNode
from stackgraph.providers.base import Operation, Provider, ProviderResult
from stackgraph.state.models import RecordStatus, ResourceRecord

logger = structlog.get_logger()

_ACTIVE_STATE = {
    Operation.CREATE: NodeState.CREATING,
    Operation.UPDATE: NodeState.UPDATING,
    Operation.DELETE: NodeState.DELETING,
}


class Executor:
    """
    Applies a plan against a provider.

    Entries start once every entry in their ``after`` list has succeeded;
    among ready entries the lowest plan index starts first. A failure marks
    everything downstream of it as failed without calling the provider. With
    ``fail_fast`` no new entries start after the first failure, while entries
    already running are allowed to finish.

    Entries that never start, because of fail-fast or cancellation, are
    reported in ``ApplyResult.skipped``. Their nodes stay ``PLANNED``, which is
    not terminal, and their outputs fail with ``InvalidStateError``. Their
    prior records are left untouched, so the next plan picks them up again.
    """

    def __init__(
        self,
        provider: Provider,
        options: ExecutorOptions | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._provider = provider
        self._options = options or ExecutorOptions()
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def options(self) -> ExecutorOptions:
        return self._options

    def cancel(self) -> None:
        """Stop starting new entries; running provider calls complete."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def apply(self, plan: Plan) -> ApplyResult:
        entries = plan.entries
        for entry in entries:
            if entry.node.state is not NodeState.PLANNED:
                raise InvalidStateError(
                    f"Resource '{entry.node_id}' was already applied; build a new graph",
                    {"node_id": entry.node_id, "state": entry.node.state.value},
                )

        collector = ResultCollector(plan.prior)
        for entry in entries:
            if entry.operation is not Operation.DELETE:
                collector.claim(entry.node_id)

        waiting_on = {index: set(entry.after) for index, entry in enumerate(entries)}
        successors: dict[int, list[int]] = {index: [] for index in range(len(entries))}
        for index, entry in enumerate(entries):
            for prerequisite in entry.after:
                successors[prerequisite].append(index)

        ready = [index for index, pending in waiting_on.items() if not pending]
        heapq.heapify(ready)
        running: dict[asyncio.Task[bool], int] = {}
        finished: set[int] = set()
        stopping = False
        limit = self._options.max_concurrency
        started = time.monotonic()

        logger.info("apply_started", entries=len(entries), **plan.summary())
        try:
            while ready or running:
                if self.cancelled and not stopping:
                    logger.warning("apply_cancel_requested", running=len(running))
                    stopping = True
                while ready and not stopping and (limit is None or len(running) < limit):
                    index = heapq.heappop(ready)
                    task = asyncio.create_task(self._run_entry(entries[index], collector))
                    running[task] = index
                if not running:
                    break

                done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=running.__getitem__):
                    index = running.pop(task)
                    finished.add(index)
                    if task.result():
                        for nxt in successors[index]:
                            waiting_on[nxt].discard(index)
                            if not waiting_on[nxt] and nxt not in finished:
                                heapq.heappush(ready, nxt)
                        continue
                    self._fail_downstream(entries, index, successors, finished, collector)
                    if self._options.fail_fast:
                        stopping = True
        except asyncio.CancelledError:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        for index, entry in enumerate(entries):
            if index not in finished:
                collector.record_skipped(entry.node_id)
                _fail_outputs(
                    entry.node,
                    InvalidStateError(f"Resource '{entry.node_id}' was not applied"),
                )

        result = collector.finalize(time.monotonic() - started, cancelled=self.cancelled)
        if plan.graph is not None:
            result.exports = resolve_exports(plan.graph.exports)
        logger.info(
            "apply_finished",
            success=result.success,
            failures=len(result.failures),
            skipped=len(result.skipped),
            provider_calls=result.provider_calls,
        )
        return result

    def _fail_downstream(
        self,
        entries: list[PlanEntry],
        failed: int,
        successors: dict[int, list[int]],
        finished: set[int],
        collector: ResultCollector,
    ) -> None:
        failed_id = entries[failed].node_id
        queue = deque(successors[failed])
        while queue:
            index = queue.popleft()
            if index in finished:
                continue
            finished.add(index)
            entry = entries[index]
            error = DependencyFailedError(entry.node_id, failed_id)
            entry.node.transition(NodeState.FAILED)
            _fail_outputs(entry.node, error)
            collector.record_failure(entry.node_id, entry.operation, error)
            logger.warning(
                "resource_dependency_failed",
                node_id=entry.node_id,
                operation=entry.operation.value,
                dependency=failed_id,
            )
            queue.extend(successors[index])

    async def _run_entry(self, entry: PlanEntry, collector: ResultCollector) -> bool:
        """Run one entry to a terminal state; returns whether it succeeded."""
        node = entry.node
        log = logger.bind(node_id=node.id, kind=node.kind, operation=entry.operation.value)

        if entry.operation is Operation.NOOP:
            assert entry.prior is not None
            node.transition(NodeState.CREATED)
            collector.write(entry.prior.with_dependencies(list(node.depends_on)))
            _publish_outputs(node, entry.prior.outputs)
            collector.record_outcome(node.id, entry.operation, node.state)
            log.debug("resource_unchanged")
            return True

        node.transition(_ACTIVE_STATE[entry.operation])
        if entry.operation is Operation.DELETE:
            return await self._delete(entry, collector, log)

        try:
            inputs = await resolve_inputs(node.inputs)
        except StackGraphError as exc:
            self._record_failure(entry, exc, collector, log)
            return False

        prior = entry.prior if entry.operation is Operation.UPDATE else None
        try:
            result = await self._invoke(entry, inputs, prior, collector)
        except ProviderError as exc:
            self._record_failure(entry, exc, collector, log, inputs=inputs)
            return False

        outputs = normalize_value(result.outputs)
        try:
            check_json_value(outputs, f"{node.id}.outputs")
        except ValidationError as exc:
            error = ProviderError(
                exc.message, node_id=node.id, operation=entry.operation.value, cause=exc
            )
            self._record_failure(
                entry, error, collector, log, inputs=inputs, external_id=result.external_id
            )
            return False

        collector.write(
            ResourceRecord(
                id=node.id,
                kind=node.kind,
                inputs=normalize_value(inputs),
                outputs=outputs,
                dependencies=list(node.depends_on),
                external_id=result.external_id,
            )
        )
        node.transition(NodeState.CREATED)
        _publish_outputs(node, outputs)
        collector.record_outcome(node.id, entry.operation, node.state)
        log.info("resource_applied", replacement=entry.replacement)
        return True

    async def _delete(self, entry: PlanEntry, collector: ResultCollector, log: Any) -> bool:
        node = entry.node
        prior = entry.prior
        if prior is not None and prior.external_id is not None:
            try:
                await self._invoke(entry, dict(prior.inputs), prior, collector)
            except ProviderError as exc:
                self._record_failure(entry, exc, collector, log)
                return False
        collector.remove(node.id)
        node.transition(NodeState.DELETED)
        collector.record_outcome(node.id, entry.operation, node.state)
        log.info("resource_deleted", replacement=entry.replacement)
        return True

    async def _invoke(
        self,
        entry: PlanEntry,
        inputs: dict[str, Any],
        prior: ResourceRecord | None,
        collector: ResultCollector,
    ) -> ProviderResult:
        collector.provider_calls += 1
        try:
            return await self._provider.invoke(
                entry.kind,
                entry.operation,
                inputs,
                resource_id=entry.node_id,
                prior=prior,
            )
        except ProviderError as exc:
            if exc.node_id is None:
                exc.node_id = entry.node_id
            raise
        except Exception as exc:
            raise ProviderError(
                str(exc) or type(exc).__name__,
                node_id=entry.node_id,
                operation=entry.operation.value,
                cause=exc,
            ) from exc

    def _record_failure(
        self,
        entry: PlanEntry,
        error: StackGraphError,
        collector: ResultCollector,
        log: Any,
        *,
        inputs: dict[str, Any] | None = None,
        external_id: str | None = None,
    ) -> None:
        """Fail ``entry``; ``external_id`` is set when the provider call itself succeeded."""
        node = entry.node
        node.transition(NodeState.FAILED)
        _fail_outputs(node, error)
        created = entry.operation is Operation.CREATE and collector.current(node.id) is None
        if external_id is not None or created:
            collector.write(
                ResourceRecord(
                    id=node.id,
                    kind=node.kind,
                    inputs=normalize_value(inputs or {}),
                    dependencies=list(node.depends_on),
                    external_id=external_id,
                    status=RecordStatus.FAILED,
                )
            )
        else:
            collector.mark_failed(node.id)
        collector.record_failure(node.id, entry.operation, error)
        log.error("resource_failed", error=error.message, error_type=type(error).__name__)


def _publish_outputs(node: ResourceNode, outputs: dict[str, Any]) -> None:
    for name, deferred in node.outputs.items():
        if deferred.done:
            continue
        if name in outputs:
            deferred.resolve(outputs[name])
        else:
            deferred.fail(
                ProviderError(
                    f"Provider returned no output '{name}' for resource '{node.id}'",
                    node_id=node.id,
                )
            )


def _fail_outputs(node: ResourceNode, error: BaseException) -> None:
    for deferred in node.outputs.values():
        if not deferred.done:
            deferred.fail(error)


def resolve_exports(exports: dict[str, InputValue]) -> dict[str, Any]:
    """Values of resolved exports; failed or still pending ones are omitted."""
    resolved: dict[str, Any] = {}
    for name, value in exports.items():
        try:
            resolved[name] = settled_value(value)
        except UnknownValueError:
            continue
    return resolved
