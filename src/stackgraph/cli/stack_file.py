"""
Stack file loading.

A stack file is YAML::

    name: dev
    provider: simulated
    kinds:
      - kind: azure:network/VirtualNetwork
        outputs: [id, name]
        replace_on_changes: [location]
    resources:
      - id: vnet
        kind: azure:network/VirtualNetwork
        inputs: {cidr: 10.240.0.0/16}
      - id: subnet
        kind: azure:network/Subnet
        inputs: {vnet_id: {$ref: vnet.id}}
      - id: app
        kind: azure:web/App
        depends_on: [network]
    groups:
      network: [vnet, subnet]
    exports:
      vnet_id: {$ref: vnet.id}

References are plain data: ``{"$ref": "<resource>.<output>"}``. A group
name in ``depends_on`` stands for all of its members. ``provider`` names a
registered provider and falls back to the configured default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from stackgraph.core.errors import CycleError, ValidationError
from stackgraph.graph.dependency_graph import DependencyGraph
from stackgraph.providers.base import ResourceSchema, SchemaLookup

logger = structlog.get_logger()

REF_KEY = "$ref"


@dataclass
class StackFile:
    name: str
    path: Path
    provider: str | None = None
    kinds: list[ResourceSchema] = field(default_factory=list)
    resources: list[dict[str, Any]] = field(default_factory=list)
    exports: dict[str, Any] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)


def load_stack_file(path: str | Path) -> StackFile:
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ValidationError(f"Stack file not found: {path}", {"path": str(path)}) from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML in {path}: {exc}", {"path": str(path)}) from exc

    if not isinstance(data, dict):
        raise ValidationError(f"Stack file {path} must be a mapping", {"path": str(path)})

    resources = data.get("resources") or []
    for index, item in enumerate(resources):
        if not isinstance(item, dict) or "id" not in item or "kind" not in item:
            raise ValidationError(
                f"Resource #{index + 1} in {path} needs an 'id' and a 'kind'",
                {"path": str(path)},
            )

    groups = data.get("groups") or {}
    if not isinstance(groups, dict) or not all(
        isinstance(members, list) for members in groups.values()
    ):
        raise ValidationError(
            f"'groups' in {path} must map group names to lists of resource ids",
            {"path": str(path)},
        )

    provider = data.get("provider")
    return StackFile(
        name=str(data.get("name") or path.stem),
        path=path,
        provider=str(provider) if provider else None,
        kinds=[ResourceSchema.from_dict(item) for item in data.get("kinds") or []],
        resources=resources,
        exports=dict(data.get("exports") or {}),
        groups={str(name): [str(m) for m in members] for name, members in groups.items()},
    )


def parse_ref(ref: str) -> tuple[str, str]:
    node_id, sep, output = str(ref).rpartition(".")
    if not sep or not node_id or not output:
        raise ValidationError(f"Invalid reference '{ref}'; expected '<resource>.<output>'")
    return node_id, output


def _is_ref(value: Any) -> bool:
    return isinstance(value, dict) and set(value) == {REF_KEY}


def _refs(value: Any) -> list[str]:
    if _is_ref(value):
        return [parse_ref(value[REF_KEY])[0]]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in _refs(item)]
    if isinstance(value, list):
        return [ref for item in value for ref in _refs(item)]
    return []


def build_graph(stack_file: StackFile, schemas: SchemaLookup) -> DependencyGraph:
    """
    Declare every resource of ``stack_file`` on a new graph.

    Groups are registered first. Resources are declared in file order,
    except that a resource whose inputs reference another one is declared
    after that producer.
    """
    graph = DependencyGraph(schemas, name=stack_file.name)
    for name, members in stack_file.groups.items():
        graph.group(name, members)
    by_id: dict[str, dict[str, Any]] = {}
    for item in stack_file.resources:
        by_id.setdefault(str(item["id"]), item)

    visiting: list[str] = []

    def resolve(value: Any) -> Any:
        if _is_ref(value):
            node_id, output = parse_ref(value[REF_KEY])
            node = graph.get(node_id)
            if node is None:
                raise ValidationError(f"Reference to undeclared resource '{node_id}'")
            return node.output(output)
        if isinstance(value, dict):
            return {key: resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [resolve(item) for item in value]
        return value

    def declare(item: dict[str, Any]) -> None:
        node_id = str(item["id"])
        if node_id in visiting:
            raise CycleError(node_id, visiting[visiting.index(node_id) :] + [node_id])
        visiting.append(node_id)
        inputs = item.get("inputs") or {}
        for producer in _refs(inputs):
            if producer == node_id:
                raise CycleError(node_id, [node_id, node_id])
            if producer in graph:
                continue
            if producer not in by_id:
                raise ValidationError(
                    f"Resource '{node_id}' references undeclared resource '{producer}'",
                    {"node_id": node_id},
                )
            declare(by_id[producer])
        visiting.pop()
        graph.declare(
            node_id,
            str(item["kind"]),
            resolve(inputs),
            depends_on=[str(dep) for dep in item.get("depends_on") or []],
        )

    for item in stack_file.resources:
        if str(item["id"]) not in graph:
            declare(item)
        elif by_id[str(item["id"])] is not item:
            # Second entry with an id already declared.
            graph.declare(str(item["id"]), str(item["kind"]))

    for name, value in stack_file.exports.items():
        graph.export(name, resolve(value))

    logger.debug("stack_file_loaded", stack=stack_file.name, resources=len(graph))
    return graph

