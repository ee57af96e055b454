"""Task Poller for asynchronous provider tasks (Kling via PiAPI).

This module implements the submit -> persist id -> poll protocol for
long-running generation tasks, plus the chained sound task that adds audio
to a finished video.

Protocol:
    1. Submit the video task. The returned task id is handed to the
       caller's on_video_task callback BEFORE polling starts, so the id is
       persisted even if the process dies mid-poll (Recovery relies on it).
    2. Poll every interval for at most max_attempts checks:
       - completed/success -> return the artifact URL
       - failed/error      -> raise ProviderTaskFailedError immediately
       - anything else     -> keep polling, pushing interpolated progress
       - fetch failures are tolerated up to max_consecutive_failures in a
         row; 404s (and 400s for sound) only become fatal after a grace
         number of attempts because fresh tasks are briefly invisible
       - budget exhausted  -> raise TaskTimeoutError
    3. If audio was requested, submit a sound task referencing the VIDEO
       TASK ID, persist its id through on_sound_task, poll it the same way.
       Sound failures are logged and the video-only URL is returned.

Timing is attempt-based. The sleep function is injected so tests run the
loop without waiting.

Usage:
    poller = TaskPoller(PiAPIClient(api_key))
    result = await poller.generate_video(
        VideoRequest(prompt, image_url, duration=10, include_audio=True),
        on_video_task=save_video_task_id,
        on_sound_task=save_sound_task_id,
        on_poll_progress=save_progress,
    )
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from cgi_pipeline.clients.piapi import PiAPIClient, PiAPIError
from cgi_pipeline.config import get_max_poll_attempts, get_poll_interval_seconds
from cgi_pipeline.constants import (
    KLING_PROMPT_MAX_LENGTH,
    MAX_CONSECUTIVE_STATUS_FAILURES,
    SOUND_NOT_FOUND_GRACE_ATTEMPTS,
    VIDEO_NOT_FOUND_GRACE_ATTEMPTS,
)
from cgi_pipeline.exceptions import (
    MissingArtifactUrlError,
    MissingTaskIdError,
    ProviderTaskFailedError,
    TaskError,
    TaskStatusCheckError,
    TaskTimeoutError,
)
from cgi_pipeline.services.cost_ledger import interpolate_poll_progress
from cgi_pipeline.services.prompt_shaping import shorten_prompt
from cgi_pipeline.utils.logging import get_logger, new_correlation_id

log = get_logger(__name__)

COMPLETED_STATUSES = frozenset({"completed", "success"})
FAILED_STATUSES = frozenset({"failed", "error"})
MAX_JSON_DECODE_DEPTH = 3

TaskIdCallback = Callable[[str], Awaitable[None]]
ProgressCallback = Callable[[int], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Response parsing (pure functions)
# ---------------------------------------------------------------------------


def _decode_json_string(value: Any) -> Any:
    """Parse JSON-encoded strings, up to MAX_JSON_DECODE_DEPTH levels deep."""
    for _ in range(MAX_JSON_DECODE_DEPTH):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except ValueError:
            break
    return value


def normalize_envelope(raw: Any) -> dict[str, Any]:
    """Turn a provider response body into a dict with a decoded "data" member.

    Returns an empty dict when the body is not an object at all.
    """
    body = _decode_json_string(raw)
    if not isinstance(body, dict):
        return {}
    if "data" in body:
        body = {**body, "data": _decode_json_string(body["data"])}
    return body


@dataclass(frozen=True)
class TaskIdLookup:
    """One place a provider may put the task id, tagged by its location."""

    location: str
    path: tuple[str, ...]

    def find(self, envelope: dict[str, Any]) -> str | None:
        node: Any = envelope
        for key in self.path:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        if isinstance(node, bool):
            return None
        if isinstance(node, int):
            return str(node)
        if isinstance(node, str) and node.strip():
            return node.strip()
        return None


# Tried in order; the first non-empty match wins
TASK_ID_LOOKUPS: tuple[TaskIdLookup, ...] = (
    TaskIdLookup("data.task_id", ("data", "task_id")),
    TaskIdLookup("data.taskId", ("data", "taskId")),
    TaskIdLookup("data.task.task_id", ("data", "task", "task_id")),
    TaskIdLookup("data.task.id", ("data", "task", "id")),
    TaskIdLookup("data.id", ("data", "id")),
    TaskIdLookup("task_id", ("task_id",)),
    TaskIdLookup("taskId", ("taskId",)),
    TaskIdLookup("task.task_id", ("task", "task_id")),
    TaskIdLookup("task.id", ("task", "id")),
)


def find_task_id(raw: Any) -> tuple[str, str] | None:
    """Return (task_id, location) for the first lookup that matches, else None."""
    envelope = normalize_envelope(raw)
    for lookup in TASK_ID_LOOKUPS:
        task_id = lookup.find(envelope)
        if task_id:
            return task_id, lookup.location
    return None


def extract_task_id(raw: Any) -> str:
    """Extract the provider task id from a submission response.

    Raises:
        MissingTaskIdError: If no lookup location holds a task id.
    """
    match = find_task_id(raw)
    if match is None:
        preview = raw if isinstance(raw, str) else json.dumps(raw, default=str)
        raise MissingTaskIdError(f"No task id in provider response: {preview[:200]}")
    return match[0]


def _error_detail(error: Any) -> str | None:
    if not error:
        return None
    if isinstance(error, dict):
        detail = error.get("message") or error.get("raw_message") or error.get("detail")
        # PiAPI reports {"code": 0, "message": ""} on healthy tasks
        return str(detail) if detail else None
    return str(error)


def _artifact_url(output: Any) -> str | None:
    if not isinstance(output, dict):
        return None
    for key in ("video_url", "url"):
        if isinstance(output.get(key), str) and output[key]:
            return output[key]

    works = output.get("works")
    if isinstance(works, list) and works and isinstance(works[0], dict):
        video = works[0].get("video") or {}
        if isinstance(video, dict):
            return video.get("resource_without_watermark") or video.get("resource") or None
    return None


@dataclass(frozen=True)
class TaskSnapshot:
    """Provider task state from one status check."""

    task_id: str
    status: str
    artifact_url: str | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_STATUSES


def parse_task_snapshot(task_id: str, raw: Any) -> TaskSnapshot:
    """Read status, artifact URL and error from the top level or the data wrapper."""
    body = normalize_envelope(raw)
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    status = body.get("status") or data.get("status") or ""
    error = _error_detail(body.get("error")) or _error_detail(data.get("error"))
    output = body.get("output") or data.get("output")

    return TaskSnapshot(
        task_id=task_id,
        status=str(status).lower(),
        artifact_url=_artifact_url(output),
        error=error,
        raw=body,
    )


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PollPolicy:
    """Attempt budget and failure tolerance for one kind of task.

    Attributes:
        interval_seconds: Delay before each status check
        max_attempts: Status checks before TaskTimeoutError
        not_found_statuses: HTTP statuses treated as "task not visible yet"
        not_found_grace: Attempts during which those statuses are ignored
        max_consecutive_failures: Other fetch failures tolerated in a row
    """

    interval_seconds: float
    max_attempts: int
    not_found_statuses: frozenset[int] = frozenset({404})
    not_found_grace: int = VIDEO_NOT_FOUND_GRACE_ATTEMPTS
    max_consecutive_failures: int = MAX_CONSECUTIVE_STATUS_FAILURES


def default_video_policy() -> PollPolicy:
    return PollPolicy(
        interval_seconds=get_poll_interval_seconds(),
        max_attempts=get_max_poll_attempts(),
    )


def default_sound_policy() -> PollPolicy:
    return PollPolicy(
        interval_seconds=get_poll_interval_seconds(),
        max_attempts=get_max_poll_attempts(),
        not_found_statuses=frozenset({400, 404}),
        not_found_grace=SOUND_NOT_FOUND_GRACE_ATTEMPTS,
    )


@dataclass(frozen=True)
class VideoRequest:
    """What to submit for one image-to-video generation."""

    prompt: str
    image_url: str
    duration: int = 5
    negative_prompt: str | None = None
    include_audio: bool = False


@dataclass(frozen=True)
class VideoTaskResult:
    """Outcome of generate_video().

    Attributes:
        video_url: Final artifact (with audio when audio_applied is True)
        video_task_id: Provider id of the video task
        sound_task_id: Provider id of the sound task, if one was obtained
        audio_applied: Whether video_url came from the sound task
        task_details: Raw payload of the last successful status check
    """

    video_url: str
    video_task_id: str
    sound_task_id: str | None = None
    audio_applied: bool = False
    task_details: dict[str, Any] = field(default_factory=dict)


class TaskPoller:
    """Submits provider tasks and waits for them to finish.

    Attributes:
        client: PiAPI client used for submit and status calls
        video_policy / sound_policy: Poll budgets per task kind
    """

    def __init__(
        self,
        client: PiAPIClient,
        video_policy: PollPolicy | None = None,
        sound_policy: PollPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
        prompt_limit: int = KLING_PROMPT_MAX_LENGTH,
    ):
        self.client = client
        self.video_policy = video_policy or default_video_policy()
        self.sound_policy = sound_policy or default_sound_policy()
        self.prompt_limit = prompt_limit
        self._sleep = sleep

    async def check_task(self, task_id: str) -> TaskSnapshot:
        """Single status check, no retries. Used directly by Recovery."""
        raw = await self.client.get_task(task_id)
        return parse_task_snapshot(task_id, raw)

    async def wait_for_task(
        self,
        task_id: str,
        policy: PollPolicy,
        *,
        kind: str = "video",
        correlation_id: str | None = None,
        on_attempt: Callable[[int, int], Awaitable[None]] | None = None,
    ) -> TaskSnapshot:
        """Poll until the task is terminal or the attempt budget is used up.

        Returns:
            The completed snapshot (artifact_url is always set).

        Raises:
            ProviderTaskFailedError: Provider reported failed/error
            MissingArtifactUrlError: Completed without an artifact URL
            TaskStatusCheckError: Status checks kept failing
            TaskTimeoutError: Still non-terminal after max_attempts checks
        """
        correlation_id = correlation_id or new_correlation_id()
        consecutive_failures = 0

        for attempt in range(1, policy.max_attempts + 1):
            await self._sleep(policy.interval_seconds)

            if on_attempt is not None:
                await on_attempt(attempt, policy.max_attempts)

            try:
                snapshot = await self.check_task(task_id)
            except PiAPIError as e:
                if e.status_code in policy.not_found_statuses:
                    if attempt > policy.not_found_grace:
                        raise TaskStatusCheckError(
                            f"Task not found after {attempt} attempts", task_id=task_id
                        ) from e
                    log.warning(
                        "task_not_visible_yet",
                        correlation_id=correlation_id,
                        kind=kind,
                        task_id=task_id,
                        attempt=attempt,
                        status_code=e.status_code,
                    )
                    continue
                consecutive_failures += 1
                failure: Exception = e
            except httpx.TransportError as e:
                consecutive_failures += 1
                failure = e
            else:
                consecutive_failures = 0

                if snapshot.is_completed:
                    if not snapshot.artifact_url:
                        raise MissingArtifactUrlError(
                            f"{kind} task completed without an artifact URL", task_id=task_id
                        )
                    log.info(
                        "task_completed",
                        correlation_id=correlation_id,
                        kind=kind,
                        task_id=task_id,
                        attempt=attempt,
                    )
                    return snapshot

                if snapshot.is_failed:
                    raise ProviderTaskFailedError(
                        f"Kling AI generation failed: {snapshot.error or 'Unknown error'}",
                        task_id=task_id,
                    )

                log.debug(
                    "task_still_running",
                    correlation_id=correlation_id,
                    kind=kind,
                    task_id=task_id,
                    status=snapshot.status,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                )
                continue

            log.warning(
                "task_status_check_failed",
                correlation_id=correlation_id,
                kind=kind,
                task_id=task_id,
                attempt=attempt,
                consecutive_failures=consecutive_failures,
                error=str(failure),
            )
            if consecutive_failures >= policy.max_consecutive_failures:
                raise TaskStatusCheckError(
                    f"Status check failed {consecutive_failures} times in a row: {failure}",
                    task_id=task_id,
                ) from failure

        raise TaskTimeoutError(
            task_id, policy.max_attempts, policy.interval_seconds, kind=kind
        )

    async def submit_video_task(self, request: VideoRequest, correlation_id: str) -> str:
        """Submit the video task and return its id (prompt shortened to the provider limit)."""
        prompt = shorten_prompt(request.prompt, self.prompt_limit)
        if len(prompt) < len(request.prompt):
            log.info(
                "prompt_shortened",
                correlation_id=correlation_id,
                original_length=len(request.prompt),
                shortened_length=len(prompt),
            )

        raw = await self.client.create_video_task(
            prompt=prompt,
            image_url=request.image_url,
            duration=request.duration,
            negative_prompt=request.negative_prompt,
        )
        task_id = extract_task_id(raw)
        log.info("video_task_submitted", correlation_id=correlation_id, task_id=task_id)
        return task_id

    async def submit_sound_task(self, origin_task_id: str, correlation_id: str) -> str:
        raw = await self.client.create_sound_task(origin_task_id)
        task_id = extract_task_id(raw)
        log.info(
            "sound_task_submitted",
            correlation_id=correlation_id,
            task_id=task_id,
            origin_task_id=origin_task_id,
        )
        return task_id

    async def generate_video(
        self,
        request: VideoRequest,
        *,
        on_video_task: TaskIdCallback | None = None,
        on_sound_task: TaskIdCallback | None = None,
        on_poll_progress: ProgressCallback | None = None,
    ) -> VideoTaskResult:
        """Run the full video protocol, with the optional sound chain.

        Raises:
            TaskError subclasses for video task failures; sound task
            failures never raise.
        """
        correlation_id = new_correlation_id()
        log.info(
            "video_generation_started",
            correlation_id=correlation_id,
            duration=request.duration,
            include_audio=request.include_audio,
        )

        video_task_id = await self.submit_video_task(request, correlation_id)
        if on_video_task is not None:
            await on_video_task(video_task_id)

        async def _push_progress(attempt: int, max_attempts: int) -> None:
            if on_poll_progress is not None:
                await on_poll_progress(interpolate_poll_progress(attempt, max_attempts))

        snapshot = await self.wait_for_task(
            video_task_id,
            self.video_policy,
            kind="video",
            correlation_id=correlation_id,
            on_attempt=_push_progress,
        )
        result = VideoTaskResult(
            video_url=snapshot.artifact_url or "",
            video_task_id=video_task_id,
            task_details=snapshot.raw,
        )

        if request.include_audio:
            result = await self._add_audio(result, correlation_id, on_sound_task)

        log.info(
            "video_generation_finished",
            correlation_id=correlation_id,
            video_task_id=video_task_id,
            sound_task_id=result.sound_task_id,
            audio_applied=result.audio_applied,
        )
        return result

    async def _add_audio(
        self,
        result: VideoTaskResult,
        correlation_id: str,
        on_sound_task: TaskIdCallback | None,
    ) -> VideoTaskResult:
        sound_task_id: str | None = None
        try:
            sound_task_id = await self.submit_sound_task(result.video_task_id, correlation_id)
            if on_sound_task is not None:
                await on_sound_task(sound_task_id)

            snapshot = await self.wait_for_task(
                sound_task_id,
                self.sound_policy,
                kind="sound",
                correlation_id=correlation_id,
            )
        except (TaskError, PiAPIError, httpx.HTTPError) as e:
            log.warning(
                "sound_task_failed_using_video_only",
                correlation_id=correlation_id,
                video_task_id=result.video_task_id,
                sound_task_id=sound_task_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return replace(result, sound_task_id=sound_task_id)

        return replace(
            result,
            video_url=snapshot.artifact_url or result.video_url,
            sound_task_id=sound_task_id,
            audio_applied=True,
            task_details=snapshot.raw,
        )
