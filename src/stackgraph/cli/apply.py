"""
CLI commands for applying and destroying a stack.
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Awaitable, Callable

from stackgraph.cli.plan import open_stack, print_plan_summary
from stackgraph.cli.stack_file import build_graph
from stackgraph.cli.state import secret_exports
from stackgraph.cli.ux import console, error, header, mask_secrets, print_table, success, warning
from stackgraph.core.errors import ExitCode, main_with_error_handling
from stackgraph.engine.results import ApplyResult
from stackgraph.engine.stack import Stack
from stackgraph.graph.node import NodeState


def print_apply_summary(result: ApplyResult, stack_name: str) -> None:
    """Print per-resource outcomes, failures and exports."""
    header(f"Apply: {stack_name}")
    for outcome in result.outcomes:
        if outcome.state is NodeState.FAILED:
            console.print(f"  [error]✗ {outcome.node_id:<24}[/error] {outcome.operation.value}")
        else:
            console.print(
                f"  [success]✓ {outcome.node_id:<24}[/success] "
                f"{outcome.operation.value} [muted]→ {outcome.state.value}[/muted]"
            )
    for node_id in result.skipped:
        console.print(f"  [warning]⚠ {node_id:<24}[/warning] skipped")

    if result.exports:
        print_table(
            "Exports",
            ["Name", "Value"],
            [[name, str(value)] for name, value in result.exports.items()],
        )

    console.print()
    duration = f" in {result.duration_seconds:.1f}s"
    if result.success:
        success(f"Applied {len(result.outcomes)} resources{duration}")
        return
    if result.cancelled:
        warning("Apply was cancelled before all resources were processed")
    for failure in result.failures:
        error(f"{failure.node_id}: {failure.message}")


def _run_with_interrupt(stack: Stack, run: Callable[[], Awaitable[ApplyResult]]) -> ApplyResult:
    """Run an apply; Ctrl-C stops scheduling instead of abandoning running calls."""

    async def runner() -> ApplyResult:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, stack.cancel)
        try:
            return await run()
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(runner())


def _finish(result: ApplyResult, stack_name: str, output_format: str) -> int:
    if output_format == "json":
        print(json.dumps({"stack": stack_name, **result.to_dict()}, indent=2))
    else:
        print_apply_summary(result, stack_name)
    return ExitCode.SUCCESS if result.success else ExitCode.APPLY_FAILED


@main_with_error_handling()
def up_command(stack_yaml: str, output_format: str = "text") -> int:
    """Plan and apply a stack file."""
    stack_file, stack = open_stack(stack_yaml)
    graph = build_graph(stack_file, stack.provider)

    async def run() -> ApplyResult:
        plan = await stack.compute_plan(graph)
        if output_format != "json":
            print_plan_summary(plan, stack_file.name)
        return await stack.apply_plan(plan)

    result = _run_with_interrupt(stack, run)
    result.exports = mask_secrets(result.exports, secret_exports(stack.provider, graph))
    return _finish(result, stack_file.name, output_format)


@main_with_error_handling()
def destroy_command(stack_yaml: str, output_format: str = "text") -> int:
    """Delete every resource recorded for a stack."""
    stack_file, stack = open_stack(stack_yaml)
    result = _run_with_interrupt(stack, stack.destroy_all)
    return _finish(result, stack_file.name, output_format)
