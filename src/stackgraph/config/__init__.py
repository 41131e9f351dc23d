"""
stackgraph configuration.

Settings are read from STACKGRAPH_* environment variables and an optional
.env file, then passed explicitly to stacks and executors.
"""

from stackgraph.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
