from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Iterable, Protocol

from stackgraph.core.errors import UnknownKindError

if TYPE_CHECKING:
    from stackgraph.state.models import ResourceRecord


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


@dataclass(frozen=True)
class ResourceSchema:
    """Schema metadata describing a provider-managed resource kind."""

    kind: str
    outputs: frozenset[str] = frozenset()
    replace_on_changes: frozenset[str] = frozenset()
    secret_outputs: frozenset[str] = frozenset()
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs", frozenset(self.outputs))
        object.__setattr__(self, "replace_on_changes", frozenset(self.replace_on_changes))
        object.__setattr__(self, "secret_outputs", frozenset(self.secret_outputs))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceSchema":
        return cls(
            kind=data["kind"],
            outputs=frozenset(data.get("outputs", [])),
            replace_on_changes=frozenset(data.get("replace_on_changes", [])),
            secret_outputs=frozenset(data.get("secret_outputs", [])),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class ProviderResult:
    """Outputs reported by a provider for one resource operation."""

    outputs: dict[str, Any] = field(default_factory=dict)
    external_id: str | None = None


class SchemaLookup(Protocol):
    def schema(self, kind: str) -> ResourceSchema:
        ...


class Provider(Protocol):
    """Contract between the engine and an external resource API."""

    name: str

    def schema(self, kind: str) -> ResourceSchema:
        ...

    def kinds(self) -> list[str]:
        ...

    async def invoke(
        self,
        kind: str,
        operation: Operation,
        inputs: dict[str, Any],
        *,
        resource_id: str,
        prior: ResourceRecord | None = None,
    ) -> ProviderResult:
        ...


class SchemaRegistry:
    """In-memory kind -> schema lookup."""

    def __init__(self, schemas: Iterable[ResourceSchema] = ()) -> None:
        self._schemas: dict[str, ResourceSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: ResourceSchema) -> None:
        if not schema.kind:
            raise ValueError("Resource kind is required")
        self._schemas[schema.kind] = schema

    def schema(self, kind: str) -> ResourceSchema:
        schema = self._schemas.get(kind)
        if schema is None:
            raise UnknownKindError(kind)
        return schema

    def kinds(self) -> list[str]:
        return list(self._schemas)

    def __contains__(self, kind: object) -> bool:
        return kind in self._schemas
