from typing import Optional


class DreamImageClientError(Exception):
    """Base class for errors raised by the image generation client"""


class SubmissionFailed(DreamImageClientError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class GenerationTimedOut(DreamImageClientError, TimeoutError):
    def __init__(self, entity_id: str, attempts: int):
        super().__init__(
            f"Image generation for {entity_id} did not finish after {attempts} attempts"
        )
        self.entity_id = entity_id
        self.attempts = attempts


class GenerationCancelled(DreamImageClientError):
    def __init__(self, entity_id: str, attempts: int):
        super().__init__(
            f"Image generation polling for {entity_id} cancelled after {attempts} attempts"
        )
        self.entity_id = entity_id
        self.attempts = attempts
