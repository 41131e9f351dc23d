"""
Deferred values: resource attributes that are only known after the
operation producing them completes.

A ``DeferredValue`` is single-assignment. It starts ``PENDING`` and is settled
exactly once, either resolved with a value or failed with an error. Composed
values created with ``map`` or ``await_all`` settle from callbacks that run
synchronously, in registration order, on the call stack that settled their
source.

Example usage:
    cluster = graph.declare("cluster", "azure:containerservice/ManagedCluster", {...})
    issuer = cluster.output("oidc_issuer").map(lambda profile: profile["issuerURL"])
    graph.declare("federated-credential", "azure:managedidentity/FederatedCredential",
                  {"issuer": issuer})
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Generator, Generic, Sequence, TypeVar

from stackgraph.core.errors import InvalidStateError, TransformError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, order=True)
class OutputKey:
    """Identifies one named output of one resource."""

    node_id: str
    output: str

    def __str__(self) -> str:
        return f"{self.node_id}.{self.output}"


class DeferredState(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class UnknownValueError(Exception):
    """Raised when a deferred value cannot be computed from recorded outputs."""


class DeferredValue(Generic[T]):
    """A value produced asynchronously by a resource operation."""

    def __init__(self, key: OutputKey | None = None, *, label: str | None = None) -> None:
        self._key = key
        self._label = label or (str(key) if key is not None else "deferred")
        self._parents: tuple[DeferredValue[Any], ...] = ()
        self._transform: Callable[[Any], Any] | None = None
        self._state = DeferredState.PENDING
        self._value: Any = None
        self._error: BaseException | None = None
        self._callbacks: list[Callable[[DeferredValue[T]], None]] | None = []

    def __repr__(self) -> str:
        return f"DeferredValue({self._label}, state={self._state.value})"

    @property
    def key(self) -> OutputKey | None:
        """The producer output this value is bound to, if it is not derived."""
        return self._key

    @property
    def label(self) -> str:
        return self._label

    @property
    def state(self) -> DeferredState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state is not DeferredState.PENDING

    @property
    def value(self) -> T:
        if self._state is not DeferredState.RESOLVED:
            raise InvalidStateError(f"Deferred value {self._label} is {self._state.value}")
        return self._value

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def sources(self) -> frozenset[OutputKey]:
        """All producer outputs this value is derived from."""
        if self._key is not None:
            return frozenset({self._key})
        keys: set[OutputKey] = set()
        for parent in self._parents:
            keys |= parent.sources
        return frozenset(keys)

    def resolve(self, value: T) -> None:
        """Settle as resolved and run downstream callbacks."""
        self._settle(DeferredState.RESOLVED, value, None)

    def fail(self, error: BaseException) -> None:
        """Settle as failed; composed values fail with the same error."""
        self._settle(DeferredState.FAILED, None, error)

    def _settle(self, state: DeferredState, value: Any, error: BaseException | None) -> None:
        if self._state is not DeferredState.PENDING:
            raise InvalidStateError(
                f"Deferred value {self._label} is already {self._state.value}",
                {"value": self._label},
            )
        self._state = state
        self._value = value
        self._error = error
        callbacks, self._callbacks = self._callbacks, None
        for callback in callbacks or ():
            callback(self)

    def add_done_callback(self, callback: Callable[[DeferredValue[T]], None]) -> None:
        """Run ``callback(self)`` once settled, immediately if already settled."""
        if self._callbacks is None:
            callback(self)
        else:
            self._callbacks.append(callback)

    def map(self, func: Callable[[T], U]) -> DeferredValue[U]:
        """Compose ``func`` lazily; it runs only if and when this value resolves."""
        child: DeferredValue[U] = DeferredValue(label=f"{self._label}.map")
        child._parents = (self,)
        child._transform = func
        self.add_done_callback(child._settle_from_source)
        return child

    def _settle_from_source(self, source: DeferredValue[Any]) -> None:
        if source.state is DeferredState.FAILED:
            self.fail(source.error or InvalidStateError("source failed"))
            return
        assert self._transform is not None
        try:
            result = self._transform(source.value)
        except Exception as exc:
            self.fail(TransformError(exc))
            return
        self.resolve(result)

    async def wait(self) -> T:
        """Suspend until settled; return the value or raise the failure."""
        if self._state is DeferredState.PENDING:
            waiter = asyncio.get_running_loop().create_future()

            def _wake(_: DeferredValue[T]) -> None:
                if not waiter.done():
                    waiter.set_result(None)

            self.add_done_callback(_wake)
            await waiter
        if self._state is DeferredState.FAILED:
            assert self._error is not None
            raise self._error
        return self._value

    def __await__(self) -> Generator[Any, None, T]:
        return self.wait().__await__()

    def evaluate(self, lookup: Callable[[OutputKey], Any]) -> T:
        """
        Recompute this value synchronously from recorded producer outputs.

        ``lookup`` returns the recorded value for a producer output or raises
        ``UnknownValueError``. Used during planning, where producers have not
        run yet but may have outputs recorded in the previous snapshot.
        """
        if self._key is not None:
            return lookup(self._key)
        if not self._parents:
            if self._state is DeferredState.RESOLVED:
                return self._value
            raise UnknownValueError(self._label)
        args = [parent.evaluate(lookup) for parent in self._parents]
        if self._transform is None:
            return args  # type: ignore[return-value]
        try:
            return self._transform(args[0])
        except Exception as exc:
            raise UnknownValueError(self._label) from exc


def await_all(values: Sequence[DeferredValue[Any]]) -> DeferredValue[list[Any]]:
    """
    Combine values into one that resolves to the list of their results.

    The first failure observed wins; values still pending at that point are
    not cancelled, they are simply ignored by the combined value.
    """
    sources = tuple(values)
    combined: DeferredValue[list[Any]] = DeferredValue(
        label=f"all({', '.join(v.label for v in sources)})"
    )
    combined._parents = sources
    if not sources:
        combined.resolve([])
        return combined

    remaining = len(sources)

    def _on_settled(source: DeferredValue[Any]) -> None:
        nonlocal remaining
        if combined.done:
            return
        if source.state is DeferredState.FAILED:
            combined.fail(source.error or InvalidStateError("source failed"))
            return
        remaining -= 1
        if remaining == 0:
            combined.resolve([v.value for v in sources])

    for source in sources:
        source.add_done_callback(_on_settled)
    return combined
