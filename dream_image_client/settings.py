from pydantic_settings import BaseSettings, SettingsConfigDict

from dream_image_client.models import StatusPollingConfig


class ClientSettings(BaseSettings):
    base_url: str = "http://localhost:8080"
    poll_interval: float = 10.0
    max_attempts: int = 300
    request_timeout: float = 30.0
    entity_path: str = "/api/dreams"

    model_config = SettingsConfigDict(
        env_prefix="DREAM_IMAGE_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def polling_config(self) -> StatusPollingConfig:
        return StatusPollingConfig(
            poll_interval=self.poll_interval,
            max_attempts=self.max_attempts,
            request_timeout=self.request_timeout,
            entity_path=self.entity_path,
        )
