"""
Error taxonomy for mastermind operations.

Precondition violations are raised before anything is mutated. Operation
errors wrap a failed external command with the context of the operation
that ran it. Divergence (vanished panes) and merge conflicts are not
errors; they surface as status changes and notifications.
"""

from typing import Optional


class MastermindError(Exception):
    """Base class for all mastermind errors."""


class PreconditionError(MastermindError):
    """An operation was refused; no state was changed."""


class AgentNotFoundError(PreconditionError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"agent {agent_id} not found")


class BranchInUseError(PreconditionError):
    """The branch is already claimed by an agent or checked out elsewhere."""


class UncommittedChangesError(PreconditionError):
    """A working directory has uncommitted changes blocking the operation."""


class NotReviewableError(PreconditionError):
    """The agent is not in a status that allows the operation."""


class PreviewActiveError(PreconditionError):
    def __init__(self, agent_id: Optional[str]):
        self.agent_id = agent_id
        if agent_id:
            message = f"preview already active for agent {agent_id}, stop it first"
        else:
            message = "preview already active, stop it first"
        super().__init__(message)


class NoActivePreviewError(PreconditionError):
    def __init__(self):
        super().__init__("no preview is active")


class OperationError(MastermindError):
    """An external tool failed while carrying out an operation."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class ConfigError(MastermindError):
    """The configuration file is malformed or holds invalid values."""


class PersistenceError(MastermindError):
    """A state file could not be read or written."""


class MergeConflictError(MastermindError):
    """A merge that must apply cleanly reported conflicts."""
