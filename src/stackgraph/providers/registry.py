from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Mapping

from stackgraph.core.errors import ConfigurationError, UnknownKindError
from stackgraph.providers.base import Operation, Provider, ProviderResult, ResourceSchema

if TYPE_CHECKING:
    from stackgraph.state.models import ResourceRecord

ProviderFactory = Callable[..., Provider]


@dataclass(frozen=True)
class ProviderSpec:
    """A named provider factory.

    Factories are called with the stack's kind schemas as ``schemas`` plus any
    provider-specific keyword arguments.
    """

    name: str
    factory: ProviderFactory
    version: str | None = None
    description: str | None = None


class ProviderRegistry:
    """Provider factories by name, used to build the provider a stack runs against."""

    def __init__(self) -> None:
        self._specs: dict[str, ProviderSpec] = {}

    def register(
        self,
        name: str,
        factory: ProviderFactory,
        *,
        version: str | None = None,
        description: str | None = None,
    ) -> None:
        if not name:
            raise ValueError("Provider name is required")
        self._specs[name] = ProviderSpec(name, factory, version, description)

    def create(self, name: str, **kwargs: Any) -> Provider:
        """Build provider ``name``; unknown names are a configuration error."""
        spec = self._specs.get(name)
        if spec is None:
            available = ", ".join(sorted(self._specs)) or "none"
            raise ConfigurationError(
                f"Unknown provider '{name}' (available: {available})",
                {"provider": name},
            )
        return spec.factory(**kwargs)

    def list(self) -> list[ProviderSpec]:
        return sorted(self._specs.values(), key=lambda spec: spec.name)


provider_registry = ProviderRegistry()


def register_provider(
    name: str,
    factory: ProviderFactory,
    *,
    version: str | None = None,
    description: str | None = None,
) -> None:
    provider_registry.register(name, factory, version=version, description=description)


def create_provider(name: str, **kwargs: Any) -> Provider:
    return provider_registry.create(name, **kwargs)


def list_providers() -> list[ProviderSpec]:
    return provider_registry.list()


def kind_namespace(kind: str) -> str:
    """``azure:network/Subnet`` -> ``azure``; kinds without a namespace map to ''."""
    namespace, sep, _ = kind.partition(":")
    return namespace if sep else ""


class RoutingProvider:
    """Dispatches each kind to the provider registered for its namespace."""

    name = "router"

    def __init__(self, providers: Mapping[str, Provider]) -> None:
        self._providers = dict(providers)

    def _route(self, kind: str) -> Provider:
        provider = self._providers.get(kind_namespace(kind))
        if provider is None:
            raise UnknownKindError(kind)
        return provider

    def schema(self, kind: str) -> ResourceSchema:
        return self._route(kind).schema(kind)

    def kinds(self) -> list[str]:
        return [kind for provider in self._providers.values() for kind in provider.kinds()]

    async def invoke(
        self,
        kind: str,
        operation: Operation,
        inputs: dict[str, Any],
        *,
        resource_id: str,
        prior: ResourceRecord | None = None,
    ) -> ProviderResult:
        provider = self._route(kind)
        return await provider.invoke(kind, operation, inputs, resource_id=resource_id, prior=prior)
