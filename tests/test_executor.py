"""Tests for engine/executor.py."""

import asyncio

import pytest

from conftest import VNET
from stackgraph.core.errors import DependencyFailedError, InvalidStateError, ProviderError
from stackgraph.engine.executor import Executor
from stackgraph.engine.options import ExecutorOptions
from stackgraph.engine.planner import ConvergencePlanner
from stackgraph.graph.deferred import DeferredState
from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.graph.node import NodeState
from stackgraph.providers.base import Operation, ProviderResult
from stackgraph.providers.simulated import SimulatedProvider
from stackgraph.state.models import RecordStatus, Snapshot
from stackgraph.state.stores import dump_snapshot


def plan_for(graph, prior=None, **kwargs):
    return ConvergencePlanner(**kwargs).plan(graph, prior or Snapshot())


class TrackingProvider(SimulatedProvider):
    """Simulated provider that records how many calls overlap."""

    def __init__(self, schemas, *, latency=0.01):
        super().__init__(schemas, latency=latency)
        self.active = 0
        self.peak = 0

    async def invoke(self, kind, operation, inputs, *, resource_id, prior=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            return await super().invoke(
                kind, operation, inputs, resource_id=resource_id, prior=prior
            )
        finally:
            self.active -= 1


class TestApply:
    """Tests for applying plans."""

    @pytest.mark.asyncio
    async def test_vnet_scenario_creates_everything(self, provider, vnet_graph):
        """Test outputs flow from producers into consumer inputs."""
        graph = vnet_graph()

        result = await Executor(provider).apply(plan_for(graph))

        assert result.success
        assert result.provider_calls == 5
        assert result.snapshot.ids() == ["vnet", "subnet", "cluster", "vault", "role"]
        vnet = result.snapshot.get("vnet")
        subnet_call = provider.calls_for("subnet")[0]
        assert subnet_call.inputs["vnet_id"] == vnet.external_id
        assert result.snapshot.get("vault").inputs["readers"] == ["cluster.kubelet_identity"]
        assert result.snapshot.get("role").dependencies == ["cluster"]
        assert all(node.state is NodeState.CREATED for node in graph)

    @pytest.mark.asyncio
    async def test_outputs_resolved_after_apply(self, provider, vnet_graph):
        """Test declared outputs resolve and exports are reported."""
        graph = vnet_graph()

        result = await Executor(provider).apply(plan_for(graph))

        cluster = graph.get("cluster")
        assert cluster.output("id").state is DeferredState.RESOLVED
        assert result.exports == {
            "cluster_id": result.snapshot.get("cluster").external_id,
            "region": "westeurope",
        }

    @pytest.mark.asyncio
    async def test_nested_exports_resolve(self, schemas):
        """Test exports may nest references, and failed ones are omitted."""
        provider = SimulatedProvider(schemas)
        provider.fail_on("broken")
        graph = DependencyGraph(provider)
        vnet = graph.declare("vnet", VNET, {"cidr": "10.0.0.0/16"})
        broken = graph.declare("broken", VNET)
        graph.export("network", {"id": vnet.output("id"), "cidrs": [vnet.output("cidr")]})
        graph.export("broken_id", {"id": broken.output("id")})

        result = await Executor(provider, ExecutorOptions(fail_fast=False)).apply(
            plan_for(graph)
        )

        assert result.exports == {
            "network": {"id": result.snapshot.get("vnet").external_id, "cidrs": ["10.0.0.0/16"]}
        }

    @pytest.mark.asyncio
    async def test_plan_applies_once(self, provider, vnet_graph):
        """Test applying the same plan twice is rejected."""
        plan = plan_for(vnet_graph())
        executor = Executor(provider)
        await executor.apply(plan)

        with pytest.raises(InvalidStateError):
            await executor.apply(plan)

    @pytest.mark.asyncio
    async def test_idempotent_reapply(self, provider, vnet_graph):
        """Test applying the re-plan is all no-op with zero provider calls."""
        first = await Executor(provider).apply(plan_for(vnet_graph()))
        calls_before = len(provider.calls)

        second = await Executor(provider).apply(plan_for(vnet_graph(), first.snapshot))

        assert second.success
        assert second.provider_calls == 0
        assert len(provider.calls) == calls_before
        assert second.snapshot.to_dict() == first.snapshot.to_dict()

    @pytest.mark.asyncio
    async def test_update_keeps_external_id(self, provider, vnet_graph):
        """Test an update reuses the existing resource."""
        first = await Executor(provider).apply(plan_for(vnet_graph()))

        second = await Executor(provider).apply(plan_for(vnet_graph(node_count=7), first.snapshot))

        assert second.success
        cluster = second.snapshot.get("cluster")
        assert cluster.external_id == first.snapshot.get("cluster").external_id
        assert cluster.inputs["node_count"] == 7
        assert [call.operation for call in provider.calls_for("cluster")] == [
            Operation.CREATE,
            Operation.UPDATE,
        ]

    @pytest.mark.asyncio
    async def test_replacement_gets_new_external_id(self, provider, vnet_graph):
        """Test a replaced resource is deleted and created anew."""
        first = await Executor(provider).apply(plan_for(vnet_graph()))

        second = await Executor(provider).apply(
            plan_for(vnet_graph(prefix="10.240.9.0/24"), first.snapshot)
        )

        assert second.success
        assert [call.operation for call in provider.calls_for("subnet")] == [
            Operation.CREATE,
            Operation.DELETE,
            Operation.CREATE,
        ]
        old_id = first.snapshot.get("subnet").external_id
        new_id = second.snapshot.get("subnet").external_id
        assert new_id != old_id
        assert second.snapshot.get("cluster").inputs["subnet_id"] == new_id

    @pytest.mark.asyncio
    async def test_create_before_delete_keeps_replacement_record(self, provider, vnet_graph):
        """Test the old resource is deleted after its replacement without dropping state."""
        first = await Executor(provider).apply(plan_for(vnet_graph()))

        plan = plan_for(
            vnet_graph(prefix="10.240.9.0/24"), first.snapshot, create_before_delete=True
        )
        second = await Executor(provider).apply(plan)

        assert second.success
        assert [call.operation for call in provider.calls_for("subnet")] == [
            Operation.CREATE,
            Operation.CREATE,
            Operation.DELETE,
        ]
        assert second.snapshot.get("subnet").inputs["prefix"] == "10.240.9.0/24"
        assert second.snapshot.get("subnet").external_id in provider.resources


class TestFailures:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_failure_isolation(self, schemas):
        """Test dependents of a failed node never reach the provider."""
        provider = SimulatedProvider(schemas)
        provider.fail_on("subnet", Operation.CREATE, "address space exhausted")
        graph = DependencyGraph(provider)
        vnet = graph.declare("vnet", VNET, {"cidr": "10.0.0.0/16"})
        graph.declare("subnet", "azure:network/Subnet", {"vnet_id": vnet.output("id")})
        graph.declare("cluster", "azure:containerservice/ManagedCluster", depends_on=["subnet"])
        graph.declare("vault", "azure:keyvault/Vault", {"tenant": "contoso"})

        result = await Executor(provider, ExecutorOptions(fail_fast=False)).apply(
            plan_for(graph)
        )

        assert not result.success
        assert result.failed_ids == ["subnet", "cluster"]
        assert isinstance(result.failures[0].error, ProviderError)
        assert isinstance(result.failures[1].error, DependencyFailedError)
        assert provider.calls_for("cluster") == []
        assert graph.get("cluster").state is NodeState.FAILED
        assert graph.get("vault").state is NodeState.CREATED
        assert result.snapshot.get("vault") is not None
        assert result.snapshot.get("cluster") is None

    @pytest.mark.asyncio
    async def test_failed_create_recorded_without_external_id(self, schemas):
        """Test a failed create leaves a FAILED record that is retried later."""
        provider = SimulatedProvider(schemas)
        provider.fail_on("vnet")
        graph = DependencyGraph(provider)
        vnet_id = graph.declare("vnet", VNET, {"cidr": "10.0.0.0/16"}).output("id")

        result = await Executor(provider).apply(plan_for(graph))

        record = result.snapshot.get("vnet")
        assert record.status is RecordStatus.FAILED
        assert record.external_id is None
        assert vnet_id.state is DeferredState.FAILED

    @pytest.mark.asyncio
    async def test_fail_fast_skips_waiting_entries(self, schemas):
        """Test no new entries start after the first failure."""
        provider = SimulatedProvider(schemas)
        provider.fail_on("a")
        graph = DependencyGraph(provider)
        graph.declare("a", VNET)
        graph.declare("b", VNET)

        result = await Executor(provider, ExecutorOptions(max_concurrency=1)).apply(
            plan_for(graph)
        )

        assert result.failed_ids == ["a"]
        assert result.skipped == ["b"]
        assert provider.calls_for("b") == []
        assert graph.get("b").state is NodeState.PLANNED

    @pytest.mark.asyncio
    async def test_fail_fast_lets_running_entries_finish(self, schemas):
        """Test a slow entry in flight at the first failure still completes and is recorded."""

        class DelayedProvider(SimulatedProvider):
            delays = {"slow": 0.05}

            async def invoke(self, kind, operation, inputs, *, resource_id, prior=None):
                await asyncio.sleep(self.delays.get(resource_id, 0))
                return await super().invoke(
                    kind, operation, inputs, resource_id=resource_id, prior=prior
                )

        provider = DelayedProvider(schemas)
        provider.fail_on("fast")
        graph = DependencyGraph(provider)
        graph.declare("fast", VNET)
        slow = graph.declare("slow", VNET)
        graph.declare("waiting", VNET, {"network_id": slow.output("id")})

        result = await Executor(provider).apply(plan_for(graph))

        assert result.failed_ids == ["fast"]
        assert graph.get("slow").state is NodeState.CREATED
        assert result.snapshot.get("slow").status is RecordStatus.CREATED
        assert result.skipped == ["waiting"]
        assert provider.calls_for("waiting") == []
        assert graph.get("waiting").state is NodeState.PLANNED

    @pytest.mark.asyncio
    async def test_unrecordable_outputs_fail_the_node(self, schemas):
        """Test outputs JSON cannot encode fail the node but keep its external id."""

        class SetOutputProvider(SimulatedProvider):
            async def invoke(self, kind, operation, inputs, *, resource_id, prior=None):
                return ProviderResult(outputs={"id": "v-1", "zones": {1, 2}}, external_id="v-1")

        provider = SetOutputProvider(schemas)
        graph = DependencyGraph(provider)
        vnet_id = graph.declare("vnet", VNET).output("id")

        result = await Executor(provider).apply(plan_for(graph))

        assert result.failed_ids == ["vnet"]
        assert "vnet.outputs.zones" in result.failures[0].error.message
        record = result.snapshot.get("vnet")
        assert record.status is RecordStatus.FAILED
        assert record.external_id == "v-1"
        assert record.outputs == {}
        assert vnet_id.state is DeferredState.FAILED
        assert dump_snapshot(result.snapshot)

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, schemas):
        """Test non-provider exceptions are attributed to the node."""

        class BrokenProvider(SimulatedProvider):
            async def invoke(self, kind, operation, inputs, *, resource_id, prior=None):
                raise RuntimeError("connection reset")

        provider = BrokenProvider(schemas)
        graph = DependencyGraph(provider)
        graph.declare("vnet", VNET)

        result = await Executor(provider).apply(plan_for(graph))

        error = result.failures[0].error
        assert isinstance(error, ProviderError)
        assert error.node_id == "vnet"
        assert isinstance(error.cause, RuntimeError)


class TestConcurrency:
    """Tests for scheduling and cancellation."""

    @pytest.mark.asyncio
    async def test_independent_nodes_run_concurrently(self, schemas):
        """Test ready nodes start together without a concurrency limit."""
        provider = TrackingProvider(schemas)
        graph = DependencyGraph(provider)
        for node_id in ["a", "b", "c", "d"]:
            graph.declare(node_id, VNET)

        await Executor(provider).apply(plan_for(graph))

        assert provider.peak == 4

    @pytest.mark.asyncio
    async def test_max_concurrency_bounds_calls(self, schemas):
        """Test max_concurrency caps overlapping provider calls."""
        provider = TrackingProvider(schemas)
        graph = DependencyGraph(provider)
        for node_id in ["a", "b", "c", "d", "e"]:
            graph.declare(node_id, VNET)

        result = await Executor(provider, ExecutorOptions(max_concurrency=2)).apply(
            plan_for(graph)
        )

        assert result.success
        assert provider.peak == 2

    @pytest.mark.asyncio
    async def test_ready_entries_start_in_plan_order(self, schemas):
        """Test the lowest plan index starts first."""
        provider = SimulatedProvider(schemas)
        graph = DependencyGraph(provider)
        for node_id in ["zeta", "alpha", "mid"]:
            graph.declare(node_id, VNET)

        await Executor(provider, ExecutorOptions(max_concurrency=1)).apply(plan_for(graph))

        assert [call.resource_id for call in provider.calls] == ["zeta", "alpha", "mid"]

    @pytest.mark.asyncio
    async def test_cancel_stops_scheduling(self, schemas):
        """Test cancelling lets running calls finish and skips the rest."""
        cancel_event = asyncio.Event()

        class CancellingProvider(SimulatedProvider):
            async def invoke(self, kind, operation, inputs, *, resource_id, prior=None):
                cancel_event.set()
                return await super().invoke(
                    kind, operation, inputs, resource_id=resource_id, prior=prior
                )

        provider = CancellingProvider(schemas)
        graph = DependencyGraph(provider)
        graph.declare("a", VNET)
        graph.declare("b", VNET, depends_on=["a"])

        result = await Executor(provider, cancel_event=cancel_event).apply(plan_for(graph))

        assert result.cancelled
        assert not result.success
        assert result.snapshot.ids() == ["a"]
        assert result.skipped == ["b"]

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, schemas):
        """Test cancelling the apply task cancels running provider calls."""
        started = asyncio.Event()

        class SlowProvider(SimulatedProvider):
            async def invoke(self, kind, operation, inputs, *, resource_id, prior=None):
                started.set()
                await asyncio.sleep(10)
                return ProviderResult()

        provider = SlowProvider(schemas)
        graph = DependencyGraph(provider)
        graph.declare("a", VNET)

        task = asyncio.create_task(Executor(provider).apply(plan_for(graph)))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
