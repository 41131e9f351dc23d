"""
CLI command for planning (dry-run) a stack.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from stackgraph.cli.stack_file import StackFile, build_graph, load_stack_file
from stackgraph.cli.ux import console, header, info, print_table, success
from stackgraph.config.settings import Settings, get_settings
from stackgraph.core.errors import ExitCode, main_with_error_handling
from stackgraph.engine.plan import Plan
from stackgraph.engine.stack import Stack
from stackgraph.providers.base import Operation
from stackgraph.providers.registry import create_provider

OPERATION_STYLES = {
    "create": "[create]+ create[/create]",
    "update": "[update]~ update[/update]",
    "delete": "[delete]- delete[/delete]",
    "noop": "[noop]  no-op[/noop]",
}


def open_stack(
    stack_yaml: str | Path, settings: Settings | None = None
) -> tuple[StackFile, Stack]:
    """Load a stack file and bind it to the configured state backend."""
    settings = settings or get_settings()
    stack_file = load_stack_file(stack_yaml)
    provider = create_provider(stack_file.provider or settings.provider, schemas=stack_file.kinds)
    return stack_file, Stack.from_settings(stack_file.name, provider, settings)


def print_plan_summary(plan: Plan, stack_name: str, verbose: bool = False) -> None:
    header(f"Plan: {stack_name}")

    entries = [e for e in plan if verbose or e.operation is not Operation.NOOP]
    if not plan.has_changes:
        success("No changes. State matches the declared resources.")
        return

    rows = []
    for entry in entries:
        label = OPERATION_STYLES[entry.operation.value]
        if entry.replacement:
            label = f"{label} [highlight](replace)[/highlight]"
        rows.append([label, entry.node_id, entry.kind, ", ".join(entry.changed)])
    print_table("", ["Action", "Resource", "Kind", "Changed"], rows)

    counts = plan.summary()
    console.print(
        f"[bold]{counts['create']} to create, {counts['update']} to update, "
        f"{counts['delete']} to delete[/bold] [muted]({counts['noop']} unchanged)[/muted]"
    )


@main_with_error_handling()
def plan_command(
    stack_yaml: str,
    output_format: str = "text",
    verbose: bool = False,
    detailed_exitcode: bool = False,
) -> int:
    """
    Show what applying a stack file would change.

    Returns:
        0 when planned (or no changes), 1 with ``detailed_exitcode`` when
        there are pending changes.
    """
    stack_file, stack = open_stack(stack_yaml)
    graph = build_graph(stack_file, stack.provider)
    plan = asyncio.run(stack.compute_plan(graph))

    if output_format == "json":
        print(json.dumps({"stack": stack_file.name, **plan.to_dict()}, indent=2))
    else:
        print_plan_summary(plan, stack_file.name, verbose=verbose)
        if plan.has_changes:
            info(f"Run 'stackgraph up {stack_yaml}' to apply these changes.")

    if detailed_exitcode and plan.has_changes:
        return ExitCode.WARNING
    return ExitCode.SUCCESS
