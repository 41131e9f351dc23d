"""Root test configuration."""

import logging

import pytest
import structlog

from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.providers.base import ResourceSchema, SchemaRegistry
from stackgraph.providers.simulated import SimulatedProvider

VNET = "azure:network/VirtualNetwork"
SUBNET = "azure:network/Subnet"
CLUSTER = "azure:containerservice/ManagedCluster"
VAULT = "azure:keyvault/Vault"
ROLE = "azure:authorization/RoleAssignment"


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def azure_schemas() -> SchemaRegistry:
    return SchemaRegistry(
        [
            ResourceSchema(VNET, outputs={"id", "name", "cidr"}, replace_on_changes={"location"}),
            ResourceSchema(SUBNET, outputs={"id", "prefix"}, replace_on_changes={"prefix"}),
            ResourceSchema(
                CLUSTER,
                outputs={"id", "kubelet_identity", "kube_config"},
                secret_outputs={"kube_config"},
            ),
            ResourceSchema(VAULT, outputs={"id", "uri"}),
            ResourceSchema(ROLE, outputs={"id"}),
        ]
    )


def declare_vnet_stack(
    graph: DependencyGraph,
    *,
    location: str = "westeurope",
    node_count: int = 3,
    prefix: str = "10.240.1.0/24",
) -> DependencyGraph:
    """VNet -> Subnet -> Cluster -> {KeyVault, RoleAssignment}."""
    vnet = graph.declare(
        "vnet", VNET, {"name": "core-vnet", "location": location, "cidr": "10.240.0.0/16"}
    )
    subnet = graph.declare("subnet", SUBNET, {"vnet_id": vnet.output("id"), "prefix": prefix})
    cluster = graph.declare(
        "cluster", CLUSTER, {"subnet_id": subnet.output("id"), "node_count": node_count}
    )
    graph.declare(
        "vault",
        VAULT,
        {"tenant": "contoso", "readers": [cluster.output("kubelet_identity")]},
    )
    graph.declare(
        "role",
        ROLE,
        {"principal": cluster.output("kubelet_identity"), "role": "AcrPull"},
    )
    graph.export("cluster_id", cluster.output("id"))
    graph.export("region", location)
    return graph


@pytest.fixture
def schemas() -> SchemaRegistry:
    return azure_schemas()


@pytest.fixture
def provider(schemas) -> SimulatedProvider:
    return SimulatedProvider(schemas)


@pytest.fixture
def vnet_graph(provider):
    """Factory building a fresh VNet scenario graph; nodes apply only once."""

    def build(**kwargs) -> DependencyGraph:
        return declare_vnet_stack(DependencyGraph(provider, name="dev"), **kwargs)

    return build
