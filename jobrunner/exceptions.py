"""
Exceptions raised by the job runner.
"""


class JobRunnerError(Exception):
    """Base class for all job runner errors."""
    pass


class ValidationError(JobRunnerError):
    """Raised when a job is rejected before it reaches the scheduler."""
    pass


class InvalidExpression(ValidationError):
    """Raised when a cron expression fails syntactic validation."""

    def __init__(self, expression: str):
        self.expression = expression
        super().__init__(f"Invalid cron expression: {expression!r}")


class ForbiddenContentError(JobRunnerError):
    """Raised when a command or script matches the denylist."""
    pass


class ScriptNotFound(JobRunnerError):
    """Raised when a job references a script that no longer exists."""
    pass


class ResourceError(JobRunnerError):
    """Raised on workspace create/destroy failures."""
    pass


class WorkspaceAcquireFailed(ResourceError):
    """Raised when a workspace directory cannot be created."""
    pass


class ExecutionError(JobRunnerError):
    """Raised when a child process cannot be run."""
    pass


class ProcessSpawnFailed(ExecutionError):
    """Raised when a child process fails to start."""
    pass


class PersistenceError(JobRunnerError):
    """Raised when a durable store read or write fails."""
    pass
