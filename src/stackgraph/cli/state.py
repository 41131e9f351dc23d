"""
CLI command for inspecting persisted stack state.
"""

from __future__ import annotations

import asyncio
import json

from stackgraph.cli.plan import open_stack
from stackgraph.cli.ux import header, mask_secrets, print_table, warning
from stackgraph.core.errors import ExitCode, main_with_error_handling
from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.graph.inputs import iter_references
from stackgraph.providers.base import Provider
from stackgraph.state.models import ResourceRecord


def _secret_names(provider: Provider, kind: str) -> frozenset[str]:
    if kind not in provider.kinds():
        return frozenset()
    return provider.schema(kind).secret_outputs


def masked_record(provider: Provider, record: ResourceRecord) -> dict:
    data = record.to_dict()
    data["outputs"] = mask_secrets(record.outputs, _secret_names(provider, record.kind))
    return data


def secret_exports(provider: Provider, graph: DependencyGraph) -> frozenset[str]:
    """Names of stack exports derived from any secret resource output."""
    names: set[str] = set()
    for name, value in graph.exports.items():
        for reference in iter_references(value):
            for key in reference.deferred.sources:
                node = graph.get(key.node_id)
                if node is not None and key.output in _secret_names(provider, node.kind):
                    names.add(name)
    return frozenset(names)


@main_with_error_handling()
def state_show_command(stack_yaml: str, output_format: str = "text") -> int:
    """Show the recorded resources of a stack, secret outputs masked."""
    stack_file, stack = open_stack(stack_yaml)
    snapshot = asyncio.run(stack.store.load())
    records = [masked_record(stack.provider, record) for record in snapshot.records]

    if output_format == "json":
        print(json.dumps({"stack": stack_file.name, "resources": records}, indent=2))
        return ExitCode.SUCCESS

    header(f"State: {stack_file.name}")
    if not records:
        warning("No resources recorded")
        return ExitCode.SUCCESS

    rows = [
        [
            data["id"],
            data["kind"],
            data["status"],
            data["external_id"] or "-",
            ", ".join(f"{k}={v}" for k, v in sorted(data["outputs"].items())),
        ]
        for data in records
    ]
    print_table("", ["Resource", "Kind", "Status", "External ID", "Outputs"], rows)
    return ExitCode.SUCCESS
