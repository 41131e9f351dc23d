"""
CLI commands for stackgraph.
"""

from stackgraph.cli.apply import destroy_command, up_command
from stackgraph.cli.plan import plan_command
from stackgraph.cli.state import state_show_command

__all__ = [
    "plan_command",
    "up_command",
    "destroy_command",
    "state_show_command",
]
