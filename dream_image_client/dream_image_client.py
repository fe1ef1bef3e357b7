import asyncio
import inspect
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Tuple, Union
from urllib.parse import quote

import aiohttp
from loguru import logger
from dream_image_client.errors import GenerationCancelled, GenerationTimedOut, SubmissionFailed
from dream_image_client.models import (
    Failed,
    GenerationStarted,
    JobState,
    NotStarted,
    PollSession,
    Progress,
    Queued,
    Running,
    StatusPollingConfig,
    Succeeded,
)
from dream_image_client.settings import ClientSettings

ProgressCallback = Callable[[Progress], Any]
EntityId = Union[str, int]

ARTIFACT_URL_FIELDS = ("imageUrl", "image_url", "artifactUrl")
DEFAULT_SUBMISSION_MESSAGE = "Image generation queued"
RETRY_MESSAGE = "Connection issue, retrying..."


class DreamImageClient:
    def __init__(
        self,
        base_url: str,
        config: Optional[StatusPollingConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or StatusPollingConfig()
        self.session = session
        self.logger = logger

    @classmethod
    def from_settings(
        cls, settings: ClientSettings, session: Optional[aiohttp.ClientSession] = None
    ) -> "DreamImageClient":
        return cls(settings.base_url, settings.polling_config(), session=session)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiohttp.ClientSession]:
        """Yields the injected session, or a session scoped to the caller's block"""
        if self.session is not None:
            yield self.session
            return
        async with aiohttp.ClientSession() as session:
            yield session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.request_timeout)

    def _entity_url(self, entity_id: str, action: str) -> str:
        prefix = self.config.entity_path.strip("/")
        prefix = f"/{prefix}" if prefix else ""
        return f"{self.base_url}{prefix}/{quote(entity_id, safe='')}/{action}"

    @staticmethod
    def _check_entity_id(entity_id: EntityId) -> str:
        entity_id = str(entity_id).strip()
        if not entity_id:
            raise ValueError("entity_id must not be empty")
        return entity_id

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Tuple[Any, str]:
        """Reads text before decoding JSON so plain-text error bodies still yield a message.

        Undecodable bytes are replaced rather than raised; returns the decoded
        JSON body (None when absent or not JSON) and the raw text.
        """
        text = await response.text(errors="replace")
        if not text.strip():
            return None, text
        try:
            return json.loads(text), text
        except ValueError:
            return None, text

    @staticmethod
    def _error_message(data: Any, text: str, status: int) -> str:
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
            if message:
                return str(message)
        return text.strip() or f"Unexpected status {status}"

    @staticmethod
    def _queue_position(data: Any) -> Optional[int]:
        if not isinstance(data, dict):
            return None
        position = data.get("queuePosition")
        # bool is an int subclass
        if isinstance(position, bool) or not isinstance(position, int) or position < 0:
            return None
        return position

    @staticmethod
    def _position_message(position: Optional[int]) -> str:
        if position is None:
            return "Waiting for image generation"
        if position == 0:
            return "Generating image..."
        return f"Waiting in queue (position {position})"

    async def start_generation(self, entity_id: EntityId) -> GenerationStarted:
        """Asks the server to enqueue an image generation job for the entity"""
        entity_id = self._check_entity_id(entity_id)
        url = self._entity_url(entity_id, "generate-image")

        async with self._session() as session:
            try:
                async with session.post(url, json={}, timeout=self._timeout()) as response:
                    data, text = await self._read_body(response)
                    status = response.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.error(f"Network error submitting generation for {entity_id}: {e!r}")
                raise SubmissionFailed(f"Network error while starting generation: {e!r}") from e

        if not 200 <= status < 300:
            message = self._error_message(data, text, status)
            self.logger.error(f"HTTP error {status} at {url}: {message}")
            raise SubmissionFailed(message, status_code=status)

        position = 0
        if isinstance(data, dict) and "queuePosition" in data:
            position = self._queue_position(data)
            if position is None:
                self.logger.warning(
                    f"Ignoring invalid queue position {data['queuePosition']!r} for {entity_id}"
                )
                position = 0
        message = data.get("message") if isinstance(data, dict) else None

        self.logger.info(f"Generation for {entity_id} submitted at queue position {position}")
        return GenerationStarted(
            initial_position=position,
            message=str(message) if message else DEFAULT_SUBMISSION_MESSAGE,
        )

    def _state_from_response(self, status: int, data: Any, text: str) -> JobState:
        if status == 204:
            return NotStarted()

        if status == 200:
            if isinstance(data, dict):
                for field in ARTIFACT_URL_FIELDS:
                    url = data.get(field)
                    if isinstance(url, str) and url:
                        return Succeeded(artifact_url=url)
            return Failed(
                message="Completed response did not include an image URL", status_code=status
            )

        if status == 202:
            position = self._queue_position(data)
            if position is None:
                return Failed(
                    message="In-progress response did not include a valid queue position",
                    status_code=status,
                )
            return Running() if position == 0 else Queued(position=position)

        return Failed(
            message=self._error_message(data, text, status),
            retryable=status >= 500,
            status_code=status,
        )

    async def _probe_once(self, entity_id: str, session: aiohttp.ClientSession) -> JobState:
        url = self._entity_url(entity_id, "status")
        try:
            async with session.get(url, timeout=self._timeout()) as response:
                data, text = await self._read_body(response)
                state = self._state_from_response(response.status, data, text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Network error checking status of {entity_id}: {e!r}")
            return Failed(message=f"Network error while checking status: {e!r}", retryable=True)

        self.logger.debug(f"Status of {entity_id}: {state!r}")
        return state

    async def probe(
        self, entity_id: EntityId, session: Optional[aiohttp.ClientSession] = None
    ) -> JobState:
        """Checks the job status once and maps the response to a JobState. Never retries"""
        entity_id = self._check_entity_id(entity_id)
        if session is not None:
            return await self._probe_once(entity_id, session)
        async with self._session() as own_session:
            return await self._probe_once(entity_id, own_session)

    async def _report(
        self,
        on_progress: Optional[ProgressCallback],
        poll_session: PollSession,
        message: str,
    ) -> None:
        if on_progress is None:
            return
        progress = Progress(
            position=poll_session.last_known_position,
            message=message,
            attempt=poll_session.attempt,
        )
        result = on_progress(progress)
        if inspect.isawaitable(result):
            await result

    async def _wait_before_probe(self, poll_session: PollSession) -> None:
        delay = self.config.poll_interval
        self.logger.debug(
            f"Waiting {delay:.2f}s before probe {poll_session.attempt + 1}/"
            f"{poll_session.max_attempts} for {poll_session.entity_id}"
        )
        await asyncio.sleep(delay)

    def _log_outcome(self, entity_id: str, state: JobState, attempts: int) -> None:
        if isinstance(state, Succeeded):
            self.logger.info(
                f"Image for {entity_id} ready after {attempts} attempts: {state.artifact_url}"
            )
        elif isinstance(state, NotStarted):
            self.logger.info(f"No generation in progress for {entity_id}")
        else:
            self.logger.error(f"Generation for {entity_id} failed: {state.message}")

    async def poll_until_done(
        self,
        entity_id: EntityId,
        initial_position: int = 0,
        on_progress: Optional[ProgressCallback] = None,
        initial_message: Optional[str] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> JobState:
        """Probe at a fixed interval until the job reaches a terminal state.

        Returns Succeeded, NotStarted or a non-retryable Failed. Retryable
        failures are reported through on_progress and count against
        max_attempts. Raises GenerationTimedOut when the attempt budget runs
        out and GenerationCancelled when is_cancelled returns True.
        """
        entity_id = self._check_entity_id(entity_id)
        poll_session = PollSession(
            entity_id=entity_id,
            max_attempts=self.config.max_attempts,
            last_known_position=initial_position,
        )
        await self._report(
            on_progress, poll_session, initial_message or self._position_message(initial_position)
        )

        async with self._session() as http_session:
            while not poll_session.exhausted:
                if is_cancelled is not None and is_cancelled():
                    self.logger.info(
                        f"Polling for {entity_id} cancelled after {poll_session.attempt} attempts"
                    )
                    raise GenerationCancelled(entity_id, poll_session.attempt)

                await self._wait_before_probe(poll_session)
                state = await self.probe(entity_id, session=http_session)
                poll_session.record_probe()

                if state.is_terminal:
                    self._log_outcome(entity_id, state, poll_session.attempt)
                    return state

                if isinstance(state, Failed):
                    await self._report(on_progress, poll_session, RETRY_MESSAGE)
                    continue

                if poll_session.last_known_position != state.position:
                    self.logger.debug(f"Queue position of {entity_id} is now {state.position}")
                poll_session.last_known_position = state.position
                await self._report(
                    on_progress, poll_session, self._position_message(state.position)
                )

        self.logger.error(
            f"Generation for {entity_id} timed out after {poll_session.attempt} attempts"
        )
        raise GenerationTimedOut(entity_id, poll_session.attempt)

    async def generate_image(
        self,
        entity_id: EntityId,
        on_progress: Optional[ProgressCallback] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> JobState:
        """Submit a generation job and poll it until it finishes"""
        started = await self.start_generation(entity_id)
        return await self.poll_until_done(
            entity_id,
            started.initial_position,
            on_progress,
            initial_message=started.message,
            is_cancelled=is_cancelled,
        )
