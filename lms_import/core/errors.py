"""Error taxonomy shared by the import pipeline and its HTTP surface."""

from __future__ import annotations

from fastapi import status


class ImportPipelineError(Exception):
    """Base class for errors raised by the Drive import pipeline."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(ImportPipelineError):
    """No session token, an unknown token, or a runner secret mismatch."""

    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(ImportPipelineError):
    """The caller is authenticated but may not run imports."""

    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(ImportPipelineError):
    """The request is missing required data or points at nothing importable."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ImportPipelineError):
    status_code = status.HTTP_404_NOT_FOUND


class RunConflictError(ImportPipelineError):
    """Another invocation owns the run, or the expected cursor is stale."""

    status_code = status.HTTP_409_CONFLICT


class TaskExecutionError(ImportPipelineError):
    """A single task failed. Recorded on the task; the run continues."""


class BudgetExceededError(ImportPipelineError):
    """Scheduling signal: the invocation ran out of wall-clock budget."""

    def __init__(self, cursor: str | None) -> None:
        super().__init__("time budget exhausted")
        self.cursor = cursor


class OrchestratorFatalError(ImportPipelineError):
    """Run state itself cannot be read or written; the run is aborted."""


class DriveError(TaskExecutionError):
    """The Drive API rejected a request or returned something unusable."""

    status_code = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "AuthenticationError",
    "BudgetExceededError",
    "DriveError",
    "ImportPipelineError",
    "NotFoundError",
    "OrchestratorFatalError",
    "PermissionDeniedError",
    "RunConflictError",
    "TaskExecutionError",
    "ValidationError",
]
