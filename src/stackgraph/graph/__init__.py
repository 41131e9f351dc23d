"""
Declarative resource graph.

Resources are declared with literal inputs and references to other
resources' outputs. References become dependency edges at declaration time,
and outputs are deferred values resolved while a plan is applied.

Example usage:
    from stackgraph.graph import DependencyGraph

    graph = DependencyGraph(provider)
    vnet = graph.declare("vnet", "azure:network/VirtualNetwork", {"cidr": "10.240.0.0/16"})
    subnet = graph.declare("subnet", "azure:network/Subnet", {"vnet_id": vnet.output("id")})
    [node.id for node in graph.topological_order()]  # ["vnet", "subnet"]
"""

from stackgraph.graph.deferred import (
    DeferredState,
    DeferredValue,
    OutputKey,
    UnknownValueError,
    await_all,
)
from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.graph.inputs import (
    InputValue,
    LiteralValue,
    OutputReference,
    describe_inputs,
    evaluate_inputs,
    iter_references,
    normalize_value,
    resolve_inputs,
)
from stackgraph.graph.node import TERMINAL_STATES, NodeState, ResourceGroup, ResourceNode

__all__ = [
    # Deferred values
    "DeferredValue",
    "DeferredState",
    "OutputKey",
    "UnknownValueError",
    "await_all",
    # Inputs
    "InputValue",
    "LiteralValue",
    "OutputReference",
    "describe_inputs",
    "evaluate_inputs",
    "iter_references",
    "normalize_value",
    "resolve_inputs",
    # Nodes and graph
    "ResourceNode",
    "ResourceGroup",
    "NodeState",
    "TERMINAL_STATES",
    "DependencyGraph",
]
