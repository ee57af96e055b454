"""Shared exceptions for the application.

This module contains exception classes used across the job store, the
pipeline stages and the HTTP layer, so services never import each other
just to share an error type.

Task errors follow the pipeline's failure taxonomy:
    - TaskStatusCheckError: transient status fetches kept failing
    - ProviderTaskFailedError: the provider reported the task as failed
    - TaskTimeoutError: the poll budget ran out while still non-terminal
    - MissingTaskIdError: the provider response broke the contract
"""

from enum import Enum


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    Example: KLING_API_KEY is unset but a video project reached the
    generating_video stage.
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when a status change is not listed in VALID_TRANSITIONS.

    Attributes:
        from_status: Status before the attempted transition.
        to_status: Status that was attempted.
    """

    def __init__(self, message: str, from_status: Enum, to_status: Enum):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class InsufficientCreditsError(Exception):
    """Raised when a user cannot pay for a new project."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: {required} required, {available} available")


class ProjectNotFoundError(Exception):
    """Raised when a project does not exist or belongs to another user."""

    pass


class JobNotFoundError(Exception):
    """Raised when a job does not exist or belongs to another user."""

    pass


class TaskError(Exception):
    """Base class for external generation task failures.

    Attributes:
        task_id: Provider task identifier, if one was obtained.
    """

    def __init__(self, message: str, task_id: str | None = None):
        self.task_id = task_id
        super().__init__(message)


class ProviderTaskFailedError(TaskError):
    """Provider reported the task as failed. Message is the provider's detail."""

    pass


class TaskTimeoutError(TaskError):
    """Task stayed non-terminal for the whole poll budget."""

    def __init__(
        self, task_id: str, attempts: int, interval_seconds: float, kind: str = "video"
    ):
        self.attempts = attempts
        self.kind = kind
        super().__init__(
            f"{kind.capitalize()} generation timed out after {attempts} status checks "
            f"({int(attempts * interval_seconds)} seconds)",
            task_id=task_id,
        )


class TaskStatusCheckError(TaskError):
    """Status fetches failed too many times to keep polling."""

    pass


class MissingTaskIdError(TaskError):
    """Provider accepted a submission but no task id could be found in the response."""

    pass


class MissingArtifactUrlError(TaskError):
    """Provider reported success but the response carries no artifact URL."""

    pass
