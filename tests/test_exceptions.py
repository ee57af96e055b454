"""Tests for shared exceptions."""

from cgi_pipeline.exceptions import (
    InsufficientCreditsError,
    InvalidStateTransitionError,
    MissingTaskIdError,
    ProviderTaskFailedError,
    TaskError,
    TaskTimeoutError,
)
from cgi_pipeline.models import ProjectStatus


class TestTaskErrors:
    """TaskError hierarchy carries the provider task id."""

    def test_timeout_message_names_attempts_and_seconds(self):
        error = TaskTimeoutError("task-9", attempts=30, interval_seconds=10)

        assert str(error) == "Video generation timed out after 30 status checks (300 seconds)"
        assert error.task_id == "task-9"
        assert error.attempts == 30

    def test_timeout_message_names_task_kind(self):
        error = TaskTimeoutError("snd-2", attempts=30, interval_seconds=10, kind="sound")

        assert str(error).startswith("Sound generation timed out after 30 status checks")
        assert error.kind == "sound"

    def test_subclasses_share_base(self):
        assert issubclass(ProviderTaskFailedError, TaskError)
        assert issubclass(MissingTaskIdError, TaskError)
        assert MissingTaskIdError("no id").task_id is None


def test_invalid_transition_str_includes_statuses():
    error = InvalidStateTransitionError(
        "Invalid transition",
        from_status=ProjectStatus.COMPLETED,
        to_status=ProjectStatus.FAILED,
    )

    assert str(error) == "Invalid transition (from=completed, to=failed)"


def test_insufficient_credits_message():
    error = InsufficientCreditsError(required=18, available=4)

    assert error.required == 18
    assert error.available == 4
    assert "18 required, 4 available" in str(error)
