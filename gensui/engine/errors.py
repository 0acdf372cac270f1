"""Exception hierarchy for the worker orchestration engine.

One exception per failure mode. Step-level failures are caught by the
executor and turned into a Failed worker; they never escape a worker task.
"""
from __future__ import annotations


class GensuiError(Exception):
    """Base exception for all orchestration errors."""


class SpawnError(GensuiError):
    """The agent binary is missing or could not be executed."""
    def __init__(self, binary: str, reason: str, attempts: int = 1):
        self.binary = binary
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            f"Failed to spawn {binary} after {attempts} attempt(s): {reason}"
        )


class NonZeroExit(GensuiError):
    """A step's process exited with a non-zero code."""
    def __init__(self, command: str, exit_code: int | None):
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"{command} exited with code {exit_code}")


class ParseAnomaly(GensuiError):
    """A line of agent output could not be mapped to a session event.

    Never fatal; the line is logged and skipped.
    """
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:117] + "..."
        super().__init__(f"Unparseable agent output ({reason}): {preview}")


class WorktreeFailure(GensuiError):
    """Creating or removing a worker's working copy failed."""
    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"git worktree {operation} failed: {detail}")


class PersistenceFailure(GensuiError):
    """Writing or reading a checkpoint failed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Persistence failure at {path}: {reason}")


class SessionResumeMiss(GensuiError):
    """The agent rejected a stored session identifier."""
    def __init__(self, session_id: str, detail: str = ""):
        self.session_id = session_id
        self.detail = detail
        msg = f"Agent could not resume session {session_id}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class InvalidTransitionError(GensuiError):
    """A worker status change is not an allowed edge."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none"
        super().__init__(
            f"Invalid worker transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class WorkerConflictError(GensuiError):
    """A worker with this name exists or is already running."""
    def __init__(self, name: str, reason: str = "already exists"):
        self.name = name
        self.reason = reason
        super().__init__(f"Worker '{name}' {reason}")


class WorkerNotFoundError(GensuiError):
    """No worker is registered under the given name."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Worker not found: {name}")


class NameValidationError(GensuiError):
    """A worker name is empty, too long, or has disallowed characters."""
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid worker name '{name}': {reason}")


class SessionClosedError(GensuiError):
    """An event was appended to a session history after it ended."""
    def __init__(self, session_id: str | None):
        self.session_id = session_id
        super().__init__(f"Session {session_id or '<pending>'} is closed")


class WorkflowConfigError(GensuiError):
    """The workflow definition file could not be used."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid workflow config {path}: {reason}")
