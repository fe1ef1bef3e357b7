from typing import List

import pytest
from pydantic import ValidationError
from dream_image_client.dream_image_client import RETRY_MESSAGE, DreamImageClient
from dream_image_client.errors import GenerationCancelled, GenerationTimedOut
from dream_image_client.models import (
    Failed,
    GenerationStarted,
    NotStarted,
    Queued,
    Running,
    StatusPollingConfig,
    Succeeded,
)

IMAGE_URL = "/images/dream-1.png"


class ScriptedJob:
    """Replays a fixed sequence of probe outcomes and records call order."""

    def __init__(self, states: List):
        self.states = list(states)
        self.events = []

    async def probe(self, entity_id, session=None):
        self.events.append(("probe", entity_id))
        return self.states.pop(0)

    def on_progress(self, progress):
        self.events.append(("progress", progress))

    @property
    def probes(self) -> int:
        return sum(1 for kind, _ in self.events if kind == "probe")

    @property
    def progress(self):
        return [payload for kind, payload in self.events if kind == "progress"]


def make_client(monkeypatch, job: ScriptedJob, max_attempts: int = 10) -> DreamImageClient:
    client = DreamImageClient(
        "http://dreams.invalid",
        config=StatusPollingConfig(poll_interval=0, max_attempts=max_attempts),
    )
    monkeypatch.setattr(client, "probe", job.probe)
    return client


@pytest.mark.asyncio
async def test_returns_succeeded_after_progress_updates(monkeypatch):
    success = Succeeded(artifact_url=IMAGE_URL)
    job = ScriptedJob([Queued(position=3), Queued(position=1), Running(), success])
    client = make_client(monkeypatch, job)

    result = await client.poll_until_done("1", 4, job.on_progress)

    assert result is success
    assert job.probes == 4
    assert [p.position for p in job.progress] == [4, 3, 1, 0]
    assert [p.attempt for p in job.progress] == [0, 1, 2, 3]
    assert job.progress[-1].message == "Generating image..."
    assert job.events[-1][0] == "probe"


@pytest.mark.asyncio
async def test_times_out_after_max_attempts(monkeypatch):
    job = ScriptedJob([Queued(position=1)] * 5)
    client = make_client(monkeypatch, job, max_attempts=3)

    with pytest.raises(GenerationTimedOut) as exc_info:
        await client.poll_until_done("1", 1, job.on_progress)

    assert job.probes == 3
    assert exc_info.value.attempts == 3
    assert len(job.progress) == 4


@pytest.mark.asyncio
async def test_retryable_failures_then_success(monkeypatch):
    transient = Failed(message="Bad gateway", retryable=True, status_code=502)
    success = Succeeded(artifact_url=IMAGE_URL)
    job = ScriptedJob([transient, transient, success])
    client = make_client(monkeypatch, job, max_attempts=3)

    result = await client.poll_until_done("1", 2, job.on_progress)

    assert result is success
    assert job.probes == 3
    assert [p.message for p in job.progress[1:]] == [RETRY_MESSAGE, RETRY_MESSAGE]
    assert [p.position for p in job.progress[1:]] == [2, 2]


@pytest.mark.asyncio
async def test_retryable_failures_count_against_budget(monkeypatch):
    job = ScriptedJob([Failed(message="offline", retryable=True)] * 2)
    client = make_client(monkeypatch, job, max_attempts=2)

    with pytest.raises(GenerationTimedOut):
        await client.poll_until_done("1", 0, job.on_progress)

    assert job.probes == 2


@pytest.mark.asyncio
async def test_not_started_returns_after_one_probe(monkeypatch):
    job = ScriptedJob([NotStarted(), Queued(position=1)])
    client = make_client(monkeypatch, job)

    result = await client.poll_until_done("1", 0, job.on_progress)

    assert result == NotStarted()
    assert job.probes == 1


@pytest.mark.asyncio
async def test_fatal_failure_returns_immediately(monkeypatch):
    fatal = Failed(message="Dream not found", status_code=404)
    job = ScriptedJob([fatal, Queued(position=1)])
    client = make_client(monkeypatch, job, max_attempts=300)

    result = await client.poll_until_done("1", 0, job.on_progress)

    assert result is fatal
    assert job.probes == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "states",
    [
        [Queued(position=2), Running(), Succeeded(artifact_url=IMAGE_URL)],
        [Failed(message="flaky", retryable=True), Succeeded(artifact_url=IMAGE_URL)],
        [NotStarted()],
        [Running(), Failed(message="Dream not found", status_code=404)],
    ],
)
async def test_no_progress_after_terminal_state(monkeypatch, states):
    job = ScriptedJob(states)
    client = make_client(monkeypatch, job)

    await client.poll_until_done("1", 1, job.on_progress)

    assert job.events[-1][0] == "probe"
    assert not job.states


@pytest.mark.asyncio
async def test_async_progress_callback_is_awaited(monkeypatch):
    job = ScriptedJob([Running(), Succeeded(artifact_url=IMAGE_URL)])
    client = make_client(monkeypatch, job)
    seen = []

    async def on_progress(progress):
        seen.append(progress.position)

    await client.poll_until_done("1", 1, on_progress)

    assert seen == [1, 0]


@pytest.mark.asyncio
async def test_cancellation_check_stops_polling(monkeypatch):
    job = ScriptedJob([Queued(position=2)] * 5)
    client = make_client(monkeypatch, job)

    with pytest.raises(GenerationCancelled) as exc_info:
        await client.poll_until_done(
            "1", 2, job.on_progress, is_cancelled=lambda: job.probes >= 2
        )

    assert job.probes == 2
    assert exc_info.value.attempts == 2
    assert job.events[-1][0] == "progress"


@pytest.mark.asyncio
async def test_generate_image_seeds_loop_from_submission(monkeypatch):
    job = ScriptedJob([Succeeded(artifact_url=IMAGE_URL)])
    client = make_client(monkeypatch, job)

    async def start_generation(entity_id):
        return GenerationStarted(initial_position=4, message="Queued for you")

    monkeypatch.setattr(client, "start_generation", start_generation)

    result = await client.generate_image("1", on_progress=job.on_progress)

    assert result == Succeeded(artifact_url=IMAGE_URL)
    assert job.progress[0].position == 4
    assert job.progress[0].message == "Queued for you"


@pytest.mark.asyncio
@pytest.mark.parametrize("entity_id", ["", "   "])
async def test_empty_entity_id_is_rejected(monkeypatch, entity_id):
    job = ScriptedJob([])
    client = make_client(monkeypatch, job)

    with pytest.raises(ValueError):
        await client.poll_until_done(entity_id, 0, job.on_progress)
    with pytest.raises(ValueError):
        await client.start_generation(entity_id)

    assert job.events == []


@pytest.mark.asyncio
async def test_negative_initial_position_is_rejected(monkeypatch):
    job = ScriptedJob([Running()])
    client = make_client(monkeypatch, job)

    with pytest.raises(ValidationError):
        await client.poll_until_done("1", -1, job.on_progress)

    assert job.events == []
