"""Planning and execution of resource graphs."""

from stackgraph.engine.executor import Executor, resolve_exports
from stackgraph.engine.options import ExecutorOptions
from stackgraph.engine.plan import Plan, PlanEntry
from stackgraph.engine.planner import ConvergencePlanner
from stackgraph.engine.results import (
    ApplyResult,
    EntryOutcome,
    NodeFailure,
    ResultCollector,
)
from stackgraph.engine.stack import Stack

__all__ = [
    "ApplyResult",
    "ConvergencePlanner",
    "EntryOutcome",
    "Executor",
    "ExecutorOptions",
    "NodeFailure",
    "Plan",
    "PlanEntry",
    "ResultCollector",
    "Stack",
    "resolve_exports",
]
