from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _JobStateBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminal: ClassVar[bool] = True

    @property
    def is_terminal(self) -> bool:
        return self.terminal


class Queued(_JobStateBase):
    terminal: ClassVar[bool] = False

    state: Literal["queued"] = "queued"
    position: int = Field(ge=0)


class Running(_JobStateBase):
    terminal: ClassVar[bool] = False

    state: Literal["running"] = "running"
    position: Literal[0] = 0


class Succeeded(_JobStateBase):
    state: Literal["succeeded"] = "succeeded"
    artifact_url: str


class NotStarted(_JobStateBase):
    state: Literal["not_started"] = "not_started"


class Failed(_JobStateBase):
    state: Literal["failed"] = "failed"
    message: str
    retryable: bool = False
    status_code: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return not self.retryable


JobState = Annotated[
    Union[Queued, Running, Succeeded, NotStarted, Failed],
    Field(discriminator="state"),
]


class GenerationStarted(BaseModel):
    initial_position: int = Field(default=0, ge=0)
    message: str


class Progress(BaseModel):
    position: Optional[int] = None
    message: str
    attempt: int = 0


class StatusPollingConfig(BaseModel):
    poll_interval: float = Field(default=10.0, ge=0)
    max_attempts: int = Field(default=300, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)
    entity_path: str = "/api/dreams"


class PollSession(BaseModel):
    """State of a single polling loop; lives only as long as that loop"""

    entity_id: str
    max_attempts: int = Field(ge=1)
    attempt: int = 0
    last_known_position: Optional[int] = Field(default=None, ge=0)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def record_probe(self) -> int:
        if self.exhausted:
            raise RuntimeError(
                f"Poll session for {self.entity_id} already used "
                f"{self.attempt}/{self.max_attempts} attempts"
            )
        self.attempt += 1
        return self.attempt
