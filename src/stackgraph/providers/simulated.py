"""
Deterministic in-memory provider.

Resources live in a dict keyed by external id. Outputs echo the input of the
same name when there is one, ``id`` reports the external id, and any other
declared output gets a stable placeholder derived from the resource id.
Failures can be injected per resource id and operation.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

import structlog

from stackgraph.core.errors import ProviderError
from stackgraph.providers.base import Operation, ProviderResult, ResourceSchema, SchemaRegistry
from stackgraph.providers.registry import register_provider

if TYPE_CHECKING:
    from stackgraph.state.models import ResourceRecord

logger = structlog.get_logger()

_ID_NAMESPACE = uuid.UUID("8d1f3c52-6b7e-4f0a-9a43-2f4f1f0c7a11")


@dataclass(frozen=True)
class ProviderCall:
    resource_id: str
    kind: str
    operation: Operation
    inputs: dict[str, Any]


class SimulatedProvider:
    name = "simulated"

    def __init__(
        self,
        schemas: Iterable[ResourceSchema] | SchemaRegistry = (),
        *,
        latency: float = 0.0,
    ) -> None:
        self._schemas = schemas if isinstance(schemas, SchemaRegistry) else SchemaRegistry(schemas)
        self._latency = latency
        self._failures: dict[tuple[str, Operation | None], str] = {}
        self._generations: dict[str, int] = {}
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[ProviderCall] = []

    def schema(self, kind: str) -> ResourceSchema:
        return self._schemas.schema(kind)

    def kinds(self) -> list[str]:
        return self._schemas.kinds()

    def fail_on(
        self,
        resource_id: str,
        operation: Operation | None = None,
        message: str = "simulated failure",
    ) -> None:
        """Make calls for ``resource_id`` fail; all operations when ``operation`` is None."""
        self._failures[(resource_id, operation)] = message

    def calls_for(self, resource_id: str) -> list[ProviderCall]:
        return [call for call in self.calls if call.resource_id == resource_id]

    def _external_id(self, kind: str, resource_id: str) -> str:
        generation = self._generations.get(resource_id, 0) + 1
        self._generations[resource_id] = generation
        return str(uuid.uuid5(_ID_NAMESPACE, f"{kind}/{resource_id}/{generation}"))

    def _outputs(
        self, schema: ResourceSchema, resource_id: str, external_id: str, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        outputs: dict[str, Any] = {}
        for name in sorted(schema.outputs):
            if name == "id":
                outputs[name] = external_id
            elif name in inputs:
                outputs[name] = inputs[name]
            else:
                outputs[name] = f"{resource_id}.{name}"
        return outputs

    async def invoke(
        self,
        kind: str,
        operation: Operation,
        inputs: dict[str, Any],
        *,
        resource_id: str,
        prior: ResourceRecord | None = None,
    ) -> ProviderResult:
        schema = self.schema(kind)
        self.calls.append(ProviderCall(resource_id, kind, operation, dict(inputs)))
        if self._latency:
            await asyncio.sleep(self._latency)

        message = self._failures.get((resource_id, operation)) or self._failures.get(
            (resource_id, None)
        )
        if message is not None:
            raise ProviderError(message, node_id=resource_id, operation=operation.value)

        if operation is Operation.NOOP:
            assert prior is not None
            return ProviderResult(outputs=dict(prior.outputs), external_id=prior.external_id)

        if operation is Operation.DELETE:
            external_id = prior.external_id if prior is not None else None
            if external_id is not None and self.resources.pop(external_id, None) is None:
                logger.debug("simulated_delete_missing", resource_id=resource_id)
            return ProviderResult(external_id=external_id)

        if operation is Operation.UPDATE and prior is not None and prior.external_id:
            external_id = prior.external_id
        else:
            external_id = self._external_id(kind, resource_id)

        self.resources[external_id] = {"id": resource_id, "kind": kind, "inputs": dict(inputs)}
        return ProviderResult(
            outputs=self._outputs(schema, resource_id, external_id, inputs),
            external_id=external_id,
        )


register_provider(
    "simulated",
    SimulatedProvider,
    version="1.0.0",
    description="Deterministic in-memory provider for dry runs and tests",
)
