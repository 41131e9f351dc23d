"""
Stack facade: plan, apply and destroy against one persisted state.

Example usage:
    stack = Stack("dev", provider, FileStateStore(Path(".stackgraph/dev.json")))
    graph = stack.new_graph()
    vnet = graph.declare("vnet", "azure:network/VirtualNetwork", {"cidr": "10.240.0.0/16"})
    plan = await stack.compute_plan(graph)
    result = await stack.apply_plan(plan)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from stackgraph.core.errors import StalePlanError
from stackgraph.engine.executor import Executor
from stackgraph.engine.options import ExecutorOptions
from stackgraph.engine.plan import Plan
from stackgraph.engine.planner import ConvergencePlanner
from stackgraph.engine.results import ApplyResult
from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.logging import bind_context
from stackgraph.providers.base import Provider
from stackgraph.state.factory import create_lease, create_state_store
from stackgraph.state.lease import Lease, NullLease
from stackgraph.state.stores import StateStore

if TYPE_CHECKING:
    from stackgraph.config.settings import Settings


class Stack:
    def __init__(
        self,
        name: str,
        provider: Provider,
        store: StateStore,
        *,
        lease: Lease | None = None,
        executor_options: ExecutorOptions | None = None,
        create_before_delete: bool = False,
    ) -> None:
        self.name = name
        self.provider = provider
        self.store = store
        self.lease = lease or NullLease(name)
        self.executor_options = executor_options or ExecutorOptions()
        self.planner = ConvergencePlanner(create_before_delete=create_before_delete)
        self._cancel_event = asyncio.Event()

    @classmethod
    def from_settings(cls, name: str, provider: Provider, settings: Settings) -> Stack:
        return cls(
            name,
            provider,
            create_state_store(settings, name),
            lease=create_lease(settings, name),
            executor_options=settings.executor_options(),
            create_before_delete=settings.create_before_delete,
        )

    def new_graph(self) -> DependencyGraph:
        """Empty graph whose kinds are resolved against this stack's provider."""
        return DependencyGraph(self.provider, name=self.name)

    def cancel(self) -> None:
        """Ask a running apply to stop starting new resources."""
        self._cancel_event.set()

    async def compute_plan(self, graph: DependencyGraph) -> Plan:
        prior = await self.store.load()
        return self.planner.plan(graph, prior)

    async def apply_plan(self, plan: Plan) -> ApplyResult:
        """
        Apply ``plan`` while holding the stack lease and persist the snapshot.

        Raises ``StalePlanError`` when the stored snapshot no longer matches
        the one the plan was computed against. Resource failures are reported
        in the result; the snapshot is saved either way.
        """
        self._cancel_event.clear()
        async with self.lease.hold() as owner:
            current = await self.store.load()
            if current.to_dict() != plan.prior.to_dict():
                raise StalePlanError(
                    f"State for stack '{self.name}' changed since the plan was computed",
                    {"stack": self.name},
                )
            executor = Executor(
                self.provider,
                self.executor_options,
                cancel_event=self._cancel_event,
            )
            log = bind_context(stack=self.name, owner=owner)
            log.info("stack_apply_started", **plan.summary())
            result = await executor.apply(plan)
            await self.store.save(result.snapshot)
            log.info(
                "stack_apply_finished",
                success=result.success,
                resources=len(result.snapshot),
            )
            return result

    async def destroy_all(self) -> ApplyResult:
        prior = await self.store.load()
        return await self.apply_plan(self.planner.destroy_plan(prior))

    async def up(self, graph: DependencyGraph) -> ApplyResult:
        """Plan and apply in one step."""
        return await self.apply_plan(await self.compute_plan(graph))
