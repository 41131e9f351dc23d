"""
Unified error types for stackgraph.

Graph construction errors (duplicate ids, cycles, unknown outputs, dangling
dependencies) are raised before any provider call is made. Runtime errors
(provider failures, failed dependencies) are attributed to a node and returned
in the apply result instead of being raised.

Exit Codes:
- 0: Success
- 1: Warning (plan has pending changes, or similar advisory result)
- 2: Apply finished with failed resources
- 10: Configuration error
- 11: Provider error (external service failure)
- 12: Validation error (malformed graph)
- 13: State error (locked, stale or unreadable state)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    WARNING = 1
    APPLY_FAILED = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    STATE_ERROR = 13
    UNKNOWN_ERROR = 127


class StackGraphError(Exception):
    """Base exception for stackgraph errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StackGraphError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(StackGraphError):
    """Raised when a declared graph is malformed."""

    exit_code = ExitCode.VALIDATION_ERROR


class DuplicateIdError(ValidationError):
    """Raised when a node id is declared twice in one graph."""

    def __init__(self, node_id: str):
        super().__init__(f"Resource '{node_id}' is already declared", {"node_id": node_id})
        self.node_id = node_id


class CycleError(ValidationError):
    """Raised when adding a node would close a dependency cycle."""

    def __init__(self, node_id: str, cycle: list[str]):
        path = " -> ".join(cycle)
        super().__init__(
            f"Declaring '{node_id}' would create a dependency cycle: {path}",
            {"node_id": node_id},
        )
        self.node_id = node_id
        self.cycle = cycle


class UnknownKindError(ValidationError):
    """Raised when no provider schema exists for a resource kind."""

    def __init__(self, kind: str):
        super().__init__(f"No provider defines resource kind '{kind}'", {"kind": kind})
        self.kind = kind


class UnknownOutputError(ValidationError):
    """Raised when a node is asked for an output its kind does not define."""

    def __init__(self, node_id: str, kind: str, output: str):
        super().__init__(
            f"Resource kind '{kind}' has no output '{output}'",
            {"node_id": node_id, "output": output},
        )
        self.node_id = node_id
        self.kind = kind
        self.output = output


class DanglingDependencyError(ValidationError):
    """Raised when a node depends on an id that is not declared."""

    def __init__(self, missing: dict[str, list[str]]):
        parts = [
            f"{target} (required by {', '.join(sorted(consumers))})"
            for target, consumers in sorted(missing.items())
        ]
        super().__init__(
            f"Undeclared dependencies: {'; '.join(parts)}",
            {"missing": ",".join(sorted(missing))},
        )
        self.missing = missing


class InvalidStateError(StackGraphError):
    """Raised on an illegal state transition (e.g. resolving a value twice)."""


class TransformError(StackGraphError):
    """Raised when a function composed with ``DeferredValue.map`` fails."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Output transform failed: {cause}", {"cause": type(cause).__name__})
        self.cause = cause


class ProviderError(StackGraphError):
    """Raised when an external provider call fails for a resource."""

    exit_code = ExitCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ):
        details: dict[str, Any] = {}
        if node_id is not None:
            details["node_id"] = node_id
        if operation is not None:
            details["operation"] = operation
        super().__init__(message, details)
        self.node_id = node_id
        self.operation = operation
        self.cause = cause


class DependencyFailedError(StackGraphError):
    """Recorded for a node that was never attempted because a dependency failed."""

    def __init__(self, node_id: str, failed_dependency: str):
        super().__init__(
            f"Resource '{node_id}' skipped: dependency '{failed_dependency}' failed",
            {"node_id": node_id, "dependency": failed_dependency},
        )
        self.node_id = node_id
        self.failed_dependency = failed_dependency


class StateError(StackGraphError):
    """Base class for state persistence and locking errors."""

    exit_code = ExitCode.STATE_ERROR


class StateStoreError(StateError):
    """Raised when a snapshot cannot be read or written."""


class StateLockedError(StateError):
    """Raised when another apply already holds the state lease."""

    def __init__(self, stack: str, holder: str | None = None):
        message = f"State for stack '{stack}' is locked"
        if holder:
            message = f"{message} by {holder}"
        super().__init__(message, {"stack": stack})
        self.stack = stack
        self.holder = holder


class StalePlanError(StateError):
    """Raised when a plan was computed against a snapshot that has since changed."""


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI commands that converts exceptions to exit codes.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - StackGraphError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StackGraphError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StackGraphError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
