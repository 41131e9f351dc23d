"""Provider contract, registry and built-in providers."""

from stackgraph.providers.base import (
    Operation,
    Provider,
    ProviderResult,
    ResourceSchema,
    SchemaLookup,
    SchemaRegistry,
)
from stackgraph.providers.registry import (
    ProviderRegistry,
    ProviderSpec,
    RoutingProvider,
    create_provider,
    list_providers,
    register_provider,
)
from stackgraph.providers.simulated import ProviderCall, SimulatedProvider

__all__ = [
    "Operation",
    "Provider",
    "ProviderResult",
    "ResourceSchema",
    "SchemaLookup",
    "SchemaRegistry",
    "ProviderRegistry",
    "ProviderSpec",
    "RoutingProvider",
    "create_provider",
    "list_providers",
    "register_provider",
    "ProviderCall",
    "SimulatedProvider",
]
