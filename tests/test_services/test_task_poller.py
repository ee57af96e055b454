"""Tests for the task poller.

The PiAPI client is replaced by AsyncMocks and the sleep function by a
recorder, so no test ever waits on a real interval.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from cgi_pipeline.clients.piapi import PiAPIError
from cgi_pipeline.exceptions import (
    MissingArtifactUrlError,
    MissingTaskIdError,
    ProviderTaskFailedError,
    TaskStatusCheckError,
    TaskTimeoutError,
)
from cgi_pipeline.services.task_poller import (
    PollPolicy,
    TaskPoller,
    VideoRequest,
    extract_task_id,
    find_task_id,
    parse_task_snapshot,
)

VIDEO_URL = "https://cdn.piapi.ai/videos/walnut.mp4"
SOUND_URL = "https://cdn.piapi.ai/videos/walnut-sound.mp4"


def _status(status: str, **extra) -> dict:
    return {"code": 200, "data": {"status": status, **extra}}


def _completed(url: str = VIDEO_URL) -> dict:
    return _status("completed", output={"video_url": url})


def _http_error(status_code: int) -> PiAPIError:
    return PiAPIError("Task status check failed", httpx.Response(status_code, text="nope"))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def client():
    mock = MagicMock()
    mock.create_video_task = AsyncMock(return_value={"data": {"task_id": "vid-1"}})
    mock.create_sound_task = AsyncMock(return_value={"data": {"task_id": "snd-1"}})
    mock.get_task = AsyncMock()
    return mock


@pytest.fixture
def poller(client, fake_sleep):
    return TaskPoller(
        client,
        video_policy=PollPolicy(interval_seconds=10, max_attempts=30),
        sound_policy=PollPolicy(
            interval_seconds=10,
            max_attempts=30,
            not_found_statuses=frozenset({400, 404}),
            not_found_grace=5,
        ),
        sleep=fake_sleep,
    )


class TestTaskIdExtraction:
    """Task id lookup across the shapes PiAPI has returned."""

    @pytest.mark.parametrize(
        "raw,location",
        [
            ({"data": {"task_id": "abc"}}, "data.task_id"),
            ({"data": {"taskId": "abc"}}, "data.taskId"),
            ({"data": {"task": {"task_id": "abc"}}}, "data.task.task_id"),
            ({"data": {"task": {"id": "abc"}}}, "data.task.id"),
            ({"data": {"id": "abc"}}, "data.id"),
            ({"task_id": "abc"}, "task_id"),
            ({"taskId": "abc"}, "taskId"),
            ({"task": {"task_id": "abc"}}, "task.task_id"),
            ({"task": {"id": "abc"}}, "task.id"),
        ],
    )
    def test_each_location(self, raw, location):
        assert find_task_id(raw) == ("abc", location)

    def test_data_location_wins_over_top_level(self):
        assert extract_task_id({"task_id": "outer", "data": {"task_id": "inner"}}) == "inner"

    def test_json_encoded_data_member(self):
        assert extract_task_id({"data": '{"task_id": "from-string"}'}) == "from-string"

    def test_json_encoded_body(self):
        assert extract_task_id('{"data": {"task_id": "from-text"}}') == "from-text"

    def test_numeric_id_is_stringified(self):
        assert extract_task_id({"data": {"id": 42}}) == "42"

    def test_blank_id_is_skipped(self):
        assert extract_task_id({"data": {"task_id": "  ", "id": "fallback"}}) == "fallback"

    def test_missing_id_raises(self):
        with pytest.raises(MissingTaskIdError, match="No task id"):
            extract_task_id({"data": {"status": "pending"}})


class TestParseTaskSnapshot:
    """Status, artifact and error reading."""

    def test_status_lowercased(self):
        assert parse_task_snapshot("t", {"data": {"status": "Processing"}}).status == "processing"

    def test_works_resource_without_watermark(self):
        video = {"resource": "a.mp4", "resource_without_watermark": "b.mp4"}
        raw = _status("completed", output={"works": [{"video": video}]})

        assert parse_task_snapshot("t", raw).artifact_url == "b.mp4"

    def test_healthy_error_object_is_ignored(self):
        raw = _status("processing", error={"code": 0, "message": ""})

        assert parse_task_snapshot("t", raw).error is None

    def test_error_message_read(self):
        raw = _status("failed", error={"code": 10000, "message": "content policy"})

        snapshot = parse_task_snapshot("t", raw)
        assert snapshot.is_failed
        assert snapshot.error == "content policy"


class TestWaitForTask:
    """Polling loop outcomes."""

    @pytest.mark.asyncio
    async def test_completes_on_third_poll(self, poller, client, sleeps):
        client.get_task.side_effect = [_status("pending"), _status("processing"), _completed()]

        snapshot = await poller.wait_for_task("vid-1", poller.video_policy)

        assert snapshot.artifact_url == VIDEO_URL
        assert client.get_task.await_count == 3
        assert sleeps == [10, 10, 10]

    @pytest.mark.asyncio
    async def test_success_status_counts_as_completed(self, poller, client):
        client.get_task.side_effect = [_status("success", output={"url": VIDEO_URL})]

        snapshot = await poller.wait_for_task("vid-1", poller.video_policy)

        assert snapshot.artifact_url == VIDEO_URL

    @pytest.mark.asyncio
    async def test_failed_status_raises_with_provider_detail(self, poller, client):
        client.get_task.side_effect = [
            _status("processing"),
            _status("failed", error={"message": "insufficient quota"}),
        ]

        with pytest.raises(ProviderTaskFailedError) as exc_info:
            await poller.wait_for_task("vid-1", poller.video_policy)

        assert str(exc_info.value) == "Kling AI generation failed: insufficient quota"
        assert exc_info.value.task_id == "vid-1"
        assert client.get_task.await_count == 2

    @pytest.mark.asyncio
    async def test_completed_without_url_is_contract_violation(self, poller, client):
        client.get_task.side_effect = [_status("completed", output={})]

        with pytest.raises(MissingArtifactUrlError):
            await poller.wait_for_task("vid-1", poller.video_policy)

    @pytest.mark.asyncio
    async def test_times_out_after_max_attempts(self, poller, client, sleeps):
        client.get_task.return_value = _status("processing")

        with pytest.raises(TaskTimeoutError) as exc_info:
            await poller.wait_for_task("vid-1", poller.video_policy)

        assert client.get_task.await_count == 30
        assert len(sleeps) == 30
        assert "300 seconds" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_sound_timeout_names_sound_task(self, poller, client):
        client.get_task.return_value = _status("processing")

        with pytest.raises(TaskTimeoutError) as exc_info:
            await poller.wait_for_task("snd-1", poller.sound_policy, kind="sound")

        assert str(exc_info.value).startswith("Sound generation timed out")
        assert exc_info.value.task_id == "snd-1"

    @pytest.mark.asyncio
    async def test_transient_failures_are_tolerated(self, poller, client):
        client.get_task.side_effect = [
            _http_error(500),
            httpx.ConnectError("reset"),
            _status("processing"),
            _http_error(502),
            _completed(),
        ]

        snapshot = await poller.wait_for_task("vid-1", poller.video_policy)

        assert snapshot.is_completed

    @pytest.mark.asyncio
    async def test_consecutive_failures_become_fatal(self, poller, client):
        client.get_task.side_effect = [_http_error(500), _http_error(503), _http_error(500)]

        with pytest.raises(TaskStatusCheckError, match="3 times in a row"):
            await poller.wait_for_task("vid-1", poller.video_policy)

    @pytest.mark.asyncio
    async def test_not_found_ignored_during_grace(self, poller, client):
        client.get_task.side_effect = [
            _http_error(404),
            _http_error(404),
            _http_error(404),
            _completed(),
        ]

        snapshot = await poller.wait_for_task("vid-1", poller.video_policy)

        assert snapshot.artifact_url == VIDEO_URL

    @pytest.mark.asyncio
    async def test_not_found_after_grace_is_fatal(self, poller, client):
        client.get_task.side_effect = [_http_error(404)] * 4

        with pytest.raises(TaskStatusCheckError, match="not found after 4 attempts"):
            await poller.wait_for_task("vid-1", poller.video_policy)

    @pytest.mark.asyncio
    async def test_on_attempt_receives_progress_inputs(self, poller, client):
        client.get_task.side_effect = [_status("processing"), _completed()]
        seen = []

        async def on_attempt(attempt, max_attempts):
            seen.append((attempt, max_attempts))

        await poller.wait_for_task("vid-1", poller.video_policy, on_attempt=on_attempt)

        assert seen == [(1, 30), (2, 30)]


class TestGenerateVideo:
    """Full video protocol with the optional sound chain."""

    @pytest.mark.asyncio
    async def test_video_task_id_persisted_before_first_poll(self, poller, client):
        events = []

        async def on_video_task(task_id):
            events.append(("video_task", task_id))

        async def get_task(task_id):
            events.append(("poll", task_id))
            return _completed()

        client.get_task.side_effect = get_task

        result = await poller.generate_video(
            VideoRequest("Orbit the table", "https://cdn.example.com/seed.png"),
            on_video_task=on_video_task,
        )

        assert events[0] == ("video_task", "vid-1")
        assert events[1] == ("poll", "vid-1")
        assert result.video_url == VIDEO_URL
        assert result.video_task_id == "vid-1"
        assert result.audio_applied is False
        client.create_sound_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submits_shortened_prompt(self, client, fake_sleep):
        poller = TaskPoller(
            client,
            video_policy=PollPolicy(interval_seconds=1, max_attempts=3),
            sleep=fake_sleep,
            prompt_limit=50,
        )
        client.get_task.side_effect = [_completed()]
        long_prompt = "Slow camera orbit around the product.\n" + "filler words " * 20

        await poller.generate_video(VideoRequest(long_prompt, "https://cdn.example.com/seed.png"))

        sent_prompt = client.create_video_task.await_args.kwargs["prompt"]
        assert len(sent_prompt) <= 50

    @pytest.mark.asyncio
    async def test_poll_progress_pushed(self, poller, client):
        client.get_task.side_effect = [_status("processing")] * 14 + [_completed()]
        progress = []

        async def on_poll_progress(value):
            progress.append(value)

        await poller.generate_video(
            VideoRequest("Orbit", "https://cdn.example.com/seed.png"),
            on_poll_progress=on_poll_progress,
        )

        assert progress[0] == 80
        assert progress[-1] == 87
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_sound_chain_replaces_url(self, poller, client):
        client.get_task.side_effect = [_completed(), _completed(SOUND_URL)]
        sound_ids = []

        async def on_sound_task(task_id):
            sound_ids.append(task_id)

        result = await poller.generate_video(
            VideoRequest("Orbit", "https://cdn.example.com/seed.png", include_audio=True),
            on_sound_task=on_sound_task,
        )

        client.create_sound_task.assert_awaited_once_with("vid-1")
        assert sound_ids == ["snd-1"]
        assert result.video_url == SOUND_URL
        assert result.sound_task_id == "snd-1"
        assert result.audio_applied is True

    @pytest.mark.asyncio
    async def test_sound_failure_falls_back_to_video(self, poller, client):
        client.get_task.side_effect = [
            _completed(),
            _status("failed", error={"message": "no audio track"}),
        ]

        result = await poller.generate_video(
            VideoRequest("Orbit", "https://cdn.example.com/seed.png", include_audio=True)
        )

        assert result.video_url == VIDEO_URL
        assert result.sound_task_id == "snd-1"
        assert result.audio_applied is False

    @pytest.mark.asyncio
    async def test_sound_submission_error_falls_back_to_video(self, poller, client):
        client.get_task.side_effect = [_completed()]
        client.create_sound_task.side_effect = PiAPIError(
            "Task submission rejected (sound)", httpx.Response(400, text="bad origin")
        )

        result = await poller.generate_video(
            VideoRequest("Orbit", "https://cdn.example.com/seed.png", include_audio=True)
        )

        assert result.video_url == VIDEO_URL
        assert result.sound_task_id is None

    @pytest.mark.asyncio
    async def test_sound_400_tolerated_during_grace(self, poller, client):
        client.get_task.side_effect = [
            _completed(),
            _http_error(400),
            _http_error(400),
            _completed(SOUND_URL),
        ]

        result = await poller.generate_video(
            VideoRequest("Orbit", "https://cdn.example.com/seed.png", include_audio=True)
        )

        assert result.audio_applied is True

    @pytest.mark.asyncio
    async def test_video_failure_propagates(self, poller, client):
        client.get_task.side_effect = [_status("failed", error="quota exceeded")]

        with pytest.raises(ProviderTaskFailedError, match="quota exceeded"):
            await poller.generate_video(VideoRequest("Orbit", "https://cdn.example.com/seed.png"))

    @pytest.mark.asyncio
    async def test_submission_without_task_id(self, poller, client):
        client.create_video_task.return_value = {"data": {"status": "queued"}}

        with pytest.raises(MissingTaskIdError):
            await poller.generate_video(VideoRequest("Orbit", "https://cdn.example.com/seed.png"))

        client.get_task.assert_not_awaited()
