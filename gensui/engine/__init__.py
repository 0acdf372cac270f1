"""Gensui engine: worker lifecycle, workflow execution, and agent subprocesses."""
from .config import GensuiConfig
from .errors import (
    GensuiError,
    InvalidTransitionError,
    NameValidationError,
    NonZeroExit,
    ParseAnomaly,
    PersistenceFailure,
    SessionClosedError,
    SessionResumeMiss,
    SpawnError,
    WorkerConflictError,
    WorkerNotFoundError,
    WorkflowConfigError,
    WorktreeFailure,
)

__all__ = [
    "GensuiConfig",
    "GensuiError",
    "InvalidTransitionError",
    "NameValidationError",
    "NonZeroExit",
    "ParseAnomaly",
    "PersistenceFailure",
    "SessionClosedError",
    "SessionResumeMiss",
    "SpawnError",
    "WorkerConflictError",
    "WorkerNotFoundError",
    "WorkflowConfigError",
    "WorktreeFailure",
]
