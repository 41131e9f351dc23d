"""Core modules for stackgraph - centralized error definitions."""

from stackgraph.core.errors import (
    ConfigurationError,
    CycleError,
    DanglingDependencyError,
    DependencyFailedError,
    DuplicateIdError,
    ExitCode,
    InvalidStateError,
    ProviderError,
    StackGraphError,
    StalePlanError,
    StateError,
    StateLockedError,
    StateStoreError,
    TransformError,
    UnknownKindError,
    UnknownOutputError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "StackGraphError",
    "ConfigurationError",
    # Graph construction
    "ValidationError",
    "DuplicateIdError",
    "CycleError",
    "UnknownKindError",
    "UnknownOutputError",
    "DanglingDependencyError",
    # Runtime
    "InvalidStateError",
    "TransformError",
    "ProviderError",
    "DependencyFailedError",
    # State
    "StateError",
    "StateStoreError",
    "StateLockedError",
    "StalePlanError",
    # Helpers
    "main_with_error_handling",
    "format_error_message",
]
