"""
Tagged input values for resource declarations.

Every leaf of a node's inputs is either a ``LiteralValue`` or an
``OutputReference`` to a deferred value; dicts and lists nest. Dependency
discovery walks this tree instead of inspecting arbitrary objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Union

from stackgraph.core.errors import ValidationError
from stackgraph.graph.deferred import DeferredState, DeferredValue, OutputKey, UnknownValueError


@dataclass(frozen=True)
class LiteralValue:
    value: Any


@dataclass(frozen=True)
class OutputReference:
    deferred: DeferredValue[Any]

    @property
    def producers(self) -> list[str]:
        """Ids of the nodes whose outputs this reference reads, sorted."""
        return sorted({key.node_id for key in self.deferred.sources})


InputValue = Union[LiteralValue, OutputReference, dict[str, "InputValue"], list["InputValue"]]


JSON_SCALARS = (str, int, float, bool, type(None))


def to_input(raw: Any, path: str = "inputs") -> InputValue:
    """
    Convert a raw declared value into the tagged input tree.

    Literals must survive a JSON round trip, since they are recorded in the
    snapshot; anything else raises ``ValidationError`` at declaration time.
    """
    if isinstance(raw, (LiteralValue, OutputReference)):
        return raw
    if isinstance(raw, DeferredValue):
        return OutputReference(raw)
    if isinstance(raw, Mapping):
        return {str(key): to_input(value, f"{path}.{key}") for key, value in raw.items()}
    if isinstance(raw, (list, tuple)):
        return [to_input(value, f"{path}[{i}]") for i, value in enumerate(raw)]
    if not isinstance(raw, JSON_SCALARS):
        raise ValidationError(
            f"Input {path} has a {type(raw).__name__} value, which cannot be recorded as JSON",
            {"path": path, "type": type(raw).__name__},
        )
    return LiteralValue(raw)


def normalize_inputs(raw: Mapping[str, Any] | None) -> dict[str, InputValue]:
    if not raw:
        return {}
    return {str(key): to_input(value, str(key)) for key, value in raw.items()}


def check_json_value(value: Any, path: str) -> None:
    """Raise ``ValidationError`` if a resolved value cannot be recorded as JSON."""
    if isinstance(value, Mapping):
        for key, item in value.items():
            check_json_value(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            check_json_value(item, f"{path}[{i}]")
    elif not isinstance(value, JSON_SCALARS):
        raise ValidationError(
            f"Value {path} has type {type(value).__name__}, which cannot be recorded as JSON",
            {"path": path, "type": type(value).__name__},
        )


def unsourced_references(inputs: Mapping[str, InputValue]) -> list[str]:
    """Labels of pending references that no declared resource will ever settle."""
    return [
        reference.deferred.label
        for value in inputs.values()
        for reference in iter_references(value)
        if not reference.deferred.sources and not reference.deferred.done
    ]


def normalize_value(value: Any) -> Any:
    """Coerce a resolved value to the shape it has after a JSON round trip."""
    if isinstance(value, Mapping):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


def iter_references(value: InputValue) -> Iterator[OutputReference]:
    """Yield every reference in an input tree, depth first in declaration order."""
    if isinstance(value, OutputReference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)


def referenced_nodes(inputs: Mapping[str, InputValue]) -> list[str]:
    """Producer node ids referenced by ``inputs``, in order of first appearance."""
    seen: dict[str, None] = {}
    for value in inputs.values():
        for reference in iter_references(value):
            for node_id in reference.producers:
                seen.setdefault(node_id, None)
    return list(seen)


async def resolve_inputs(value: InputValue) -> Any:
    """Wait for every reference in the tree and return plain values."""
    if isinstance(value, LiteralValue):
        return value.value
    if isinstance(value, OutputReference):
        return normalize_value(await value.deferred.wait())
    if isinstance(value, dict):
        return {key: await resolve_inputs(item) for key, item in value.items()}
    return [await resolve_inputs(item) for item in value]


def evaluate_inputs(value: InputValue, lookup: Callable[[OutputKey], Any]) -> Any:
    """Evaluate the tree against recorded outputs; raises ``UnknownValueError``."""
    if isinstance(value, LiteralValue):
        return value.value
    if isinstance(value, OutputReference):
        return normalize_value(value.deferred.evaluate(lookup))
    if isinstance(value, dict):
        return {key: evaluate_inputs(item, lookup) for key, item in value.items()}
    return [evaluate_inputs(item, lookup) for item in value]


def describe_inputs(value: InputValue) -> Any:
    """Render the tree for display, showing references by producer output."""
    if isinstance(value, LiteralValue):
        return value.value
    if isinstance(value, OutputReference):
        sources = sorted(str(key) for key in value.deferred.sources)
        if not sources and value.deferred.state is DeferredState.RESOLVED:
            return value.deferred.value
        if not sources:
            return {"$ref": value.deferred.label}
        return {"$ref": sources[0] if len(sources) == 1 else sources}
    if isinstance(value, dict):
        return {key: describe_inputs(item) for key, item in value.items()}
    return [describe_inputs(item) for item in value]


def settled_value(value: InputValue) -> Any:
    """Plain value of a tree whose references already settled.

    Raises ``UnknownValueError`` when any reference is pending or failed.
    """
    if isinstance(value, LiteralValue):
        return value.value
    if isinstance(value, OutputReference):
        if value.deferred.state is not DeferredState.RESOLVED:
            raise UnknownValueError(value.deferred.label)
        return normalize_value(value.deferred.value)
    if isinstance(value, dict):
        return {key: settled_value(item) for key, item in value.items()}
    return [settled_value(item) for item in value]
