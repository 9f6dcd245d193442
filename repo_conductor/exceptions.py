"""Custom exception hierarchy for the repo-conductor orchestration engine.

This module defines the exceptions raised by the scheduler, the lock manager,
the approval gates and the stage state machine. Per-item errors are caught at
the item boundary of a run and converted into failure reports; run-level
errors (locks, scheduling) surface as skips or as a failed run result.

Exception Hierarchy:
    ConductorError (base)
    ├── ConfigurationError
    ├── UnknownStageError
    ├── LockError
    ├── ScheduleError
    ├── ArtifactError
    │   ├── ArtifactMissingError
    │   └── ArtifactInvalidError
    ├── GateError
    ├── CollaboratorError
    ├── StageTransitionError
    └── UnhandledStageError

Example Usage:
    >>> from repo_conductor.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""

from pathlib import Path


class ConductorError(Exception):
    """Base exception for all repo-conductor errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(ConductorError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Invalid configuration values
    """

    pass


class UnknownStageError(ConductorError):
    """A stage string is neither a canonical stage nor a known legacy alias."""

    def __init__(self, raw: str) -> None:
        self.raw = raw
        super().__init__(f"Unknown work item stage: {raw!r}")


class LockError(ConductorError):
    """Lock acquisition failed.

    Attributes:
        reason: "locked" when a fresh lock is held by someone else,
            "stale_replace_failed" when a stale lock could not be removed
        path: Lock file path
    """

    def __init__(self, message: str, reason: str = "locked", path: Path | None = None) -> None:
        self.reason = reason
        self.path = path
        super().__init__(message)


class ScheduleError(ConductorError):
    """The schedule for a run could not be computed."""

    pass


class ArtifactError(ConductorError):
    """Base class for artifact loading errors.

    Attributes:
        path: Path of the artifact that could not be used
    """

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class ArtifactMissingError(ArtifactError):
    """A required artifact does not exist."""

    pass


class ArtifactInvalidError(ArtifactError):
    """An artifact exists but is not structurally valid.

    Attributes:
        errors: Individual validation problems
    """

    def __init__(self, message: str, path: Path | None = None, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        full_message = message
        if self.errors:
            full_message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(full_message, path=path)
        self.message = message


class GateError(ConductorError):
    """An approval gate refused to act.

    Attributes:
        gate: "apply" or "merge"
    """

    def __init__(self, message: str, gate: str) -> None:
        self.gate = gate
        super().__init__(message)


class CollaboratorError(ConductorError):
    """An external collaborator (propose, qa, apply, ci-update, ...) failed.

    Attributes:
        operation: Name of the collaborator operation
        work_id: Work item the call was made for
    """

    def __init__(self, message: str, operation: str, work_id: str | None = None) -> None:
        self.operation = operation
        self.work_id = work_id
        full_message = f"{operation} failed: {message}"
        if work_id:
            full_message = f"{full_message} (work: {work_id})"
        super().__init__(full_message)
        self.message = message


class StageTransitionError(ConductorError):
    """A stage transition would break the state machine invariants.

    Attributes:
        work_id: Work item being transitioned
        from_stage: Stage before the attempted transition
        to_stage: Requested stage
    """

    def __init__(self, message: str, work_id: str, from_stage: str | None, to_stage: str) -> None:
        self.work_id = work_id
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"{message} ({work_id}: {from_stage} -> {to_stage})")
        self.message = message


class UnhandledStageError(ConductorError):
    """Wraps an unexpected exception raised while processing one work item."""

    def __init__(self, work_id: str, original: BaseException) -> None:
        self.work_id = work_id
        self.original = original
        super().__init__(f"{type(original).__name__}: {original}")
