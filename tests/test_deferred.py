"""Tests for graph/deferred.py.

Single-assignment deferred values, composition and plan-time evaluation.
"""

import asyncio

import pytest

from stackgraph.core.errors import InvalidStateError, ProviderError, TransformError
from stackgraph.graph.deferred import (
    DeferredState,
    DeferredValue,
    OutputKey,
    UnknownValueError,
    await_all,
)


class TestDeferredValue:
    """Tests for settling and observing a DeferredValue."""

    def test_starts_pending(self):
        """Test a new value is pending and has no value yet."""
        value = DeferredValue(OutputKey("vnet", "id"))

        assert value.state is DeferredState.PENDING
        assert not value.done
        with pytest.raises(InvalidStateError):
            _ = value.value

    def test_resolve_once(self):
        """Test a value can be resolved exactly once."""
        value = DeferredValue(OutputKey("vnet", "id"))
        value.resolve("vnet-123")

        assert value.state is DeferredState.RESOLVED
        assert value.value == "vnet-123"
        with pytest.raises(InvalidStateError):
            value.resolve("other")
        with pytest.raises(InvalidStateError):
            value.fail(RuntimeError("late"))

    def test_fail_records_error(self):
        """Test failing stores the error."""
        value = DeferredValue(OutputKey("vnet", "id"))
        error = ProviderError("quota exceeded", node_id="vnet")
        value.fail(error)

        assert value.state is DeferredState.FAILED
        assert value.error is error

    def test_callbacks_run_in_registration_order(self):
        """Test callbacks fire synchronously in the order they were added."""
        value = DeferredValue(OutputKey("vnet", "id"))
        seen = []
        value.add_done_callback(lambda v: seen.append(("first", v.value)))
        value.add_done_callback(lambda v: seen.append(("second", v.value)))

        value.resolve("x")

        assert seen == [("first", "x"), ("second", "x")]

    def test_callback_after_settle_runs_immediately(self):
        """Test adding a callback to a settled value calls it right away."""
        value = DeferredValue(OutputKey("vnet", "id"))
        value.resolve(1)
        seen = []

        value.add_done_callback(lambda v: seen.append(v.value))

        assert seen == [1]

    def test_label_and_sources(self):
        """Test keyed values report their own key as source."""
        key = OutputKey("cluster", "kubelet_identity")
        value = DeferredValue(key)

        assert value.label == "cluster.kubelet_identity"
        assert value.sources == frozenset({key})


class TestMap:
    """Tests for lazy composition with map()."""

    def test_map_applies_on_resolve(self):
        """Test the transform runs when the source resolves."""
        source = DeferredValue(OutputKey("vnet", "cidr"))
        prefix = source.map(lambda cidr: cidr.split("/")[0])

        assert prefix.state is DeferredState.PENDING
        source.resolve("10.240.0.0/16")

        assert prefix.value == "10.240.0.0"

    def test_map_propagates_failure(self):
        """Test a failed source fails the mapped value with the same error."""
        source = DeferredValue(OutputKey("vnet", "cidr"))
        mapped = source.map(str.upper)
        error = ProviderError("boom", node_id="vnet")

        source.fail(error)

        assert mapped.state is DeferredState.FAILED
        assert mapped.error is error

    def test_transform_error_fails_value(self):
        """Test an exception in the transform becomes a TransformError."""
        source = DeferredValue(OutputKey("vnet", "cidr"))
        mapped = source.map(lambda value: value["missing"])

        source.resolve({})

        assert isinstance(mapped.error, TransformError)

    def test_mapped_sources_follow_parents(self):
        """Test sources of a composed value are its producers' keys."""
        key = OutputKey("subnet", "id")
        mapped = DeferredValue(key).map(str).map(len)

        assert mapped.sources == frozenset({key})


class TestAwaitAll:
    """Tests for await_all()."""

    def test_empty_resolves_immediately(self):
        """Test combining nothing resolves to an empty list."""
        combined = await_all([])

        assert combined.value == []

    def test_resolves_in_input_order(self):
        """Test the combined list keeps input order, not completion order."""
        first = DeferredValue(OutputKey("a", "id"))
        second = DeferredValue(OutputKey("b", "id"))
        combined = await_all([first, second])

        second.resolve("b-1")
        assert not combined.done
        first.resolve("a-1")

        assert combined.value == ["a-1", "b-1"]

    def test_first_failure_wins(self):
        """Test the first failure settles the combination; later ones are ignored."""
        first = DeferredValue(OutputKey("a", "id"))
        second = DeferredValue(OutputKey("b", "id"))
        combined = await_all([first, second])
        error = RuntimeError("first")

        second.fail(error)
        first.fail(RuntimeError("second"))

        assert combined.error is error


class TestWait:
    """Tests for awaiting deferred values."""

    @pytest.mark.asyncio
    async def test_await_resolved_value(self):
        """Test awaiting suspends until the value resolves."""
        value = DeferredValue(OutputKey("vnet", "id"))
        loop = asyncio.get_running_loop()
        loop.call_soon(value.resolve, "vnet-1")

        assert await value == "vnet-1"

    @pytest.mark.asyncio
    async def test_await_failed_value_raises(self):
        """Test awaiting a failed value raises its error."""
        value = DeferredValue(OutputKey("vnet", "id"))
        value.fail(ProviderError("denied", node_id="vnet"))

        with pytest.raises(ProviderError, match="denied"):
            await value.wait()


class TestEvaluate:
    """Tests for plan-time evaluation against recorded outputs."""

    def test_keyed_value_uses_lookup(self):
        """Test a producer output is read through the lookup."""
        value = DeferredValue(OutputKey("vnet", "id"))

        assert value.evaluate({OutputKey("vnet", "id"): "vnet-9"}.__getitem__) == "vnet-9"

    def test_map_is_recomputed(self):
        """Test transforms are reapplied to recorded outputs."""
        value = DeferredValue(OutputKey("vnet", "cidr")).map(lambda c: c + "!")

        assert value.evaluate(lambda key: "10.0.0.0/8") == "10.0.0.0/8!"

    def test_unknown_lookup_propagates(self):
        """Test an unknown producer output makes the whole value unknown."""

        def lookup(key):
            raise UnknownValueError(str(key))

        value = await_all([DeferredValue(OutputKey("a", "id"))])

        with pytest.raises(UnknownValueError):
            value.evaluate(lookup)

    def test_unkeyed_resolved_value_is_known(self):
        """Test a resolved value with no producer evaluates to itself."""
        value = DeferredValue(label="constant")
        value.resolve(42)

        assert value.evaluate(lambda key: None) == 42
