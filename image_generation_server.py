import random
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Optional

from aiohttp import web
from loguru import logger


class ImageGenerationServer:
    """Local stand-in for the dream service's image generation endpoints.

    Jobs are processed one at a time in FIFO order, each taking
    ``completion_time`` seconds. Queue positions are 1-based while waiting
    and 0 while a job is being processed.
    """

    def __init__(self, completion_time: float = 10.0, error_rate: float = 0.1):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.error_status = 500
        self.forced_status: Optional[int] = None
        self.forced_body: Optional[bytes] = None
        self.fail_next = 0
        self.status_checks = 0
        self.queue: Deque[str] = deque()
        self.processing: Optional[str] = None
        self.processing_since: Optional[datetime] = None
        self.images: Dict[str, str] = {}
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_post("/api/dreams/{id}/generate-image", self.handle_generate_image)
        self.app.router.add_get("/api/dreams/{id}/status", self.handle_status)
        self.logger = logger

    def _advance(self) -> None:
        now = datetime.now()
        while True:
            if self.processing is not None:
                elapsed = (now - self.processing_since).total_seconds()
                if elapsed < self.completion_time:
                    return
                self.images[self.processing] = f"/images/dream-{self.processing}.png"
                self.logger.info(f"Finished image for dream {self.processing}")
                self.processing = None
            if not self.queue:
                return
            self.processing = self.queue.popleft()
            self.processing_since = now
            self.logger.info(f"Processing dream {self.processing}")

    def _position(self, dream_id: str) -> Optional[int]:
        if self.processing == dream_id:
            return 0
        if dream_id in self.queue:
            return self.queue.index(dream_id) + 1
        return None

    def _forced_response(self):
        self.logger.info(f"Returning forced status {self.forced_status}")
        if self.forced_body is not None:
            return web.Response(
                body=self.forced_body,
                status=self.forced_status,
                content_type="text/plain",
                charset="utf-8",
            )
        return web.json_response(
            {"message": f"Forced status {self.forced_status}"}, status=self.forced_status
        )

    async def handle_generate_image(self, request):
        dream_id = request.match_info["id"]
        if self.forced_status is not None:
            return self._forced_response()
        self._advance()

        if self._position(dream_id) is not None:
            self.logger.info(f"Rejecting duplicate request for dream {dream_id}")
            return web.json_response(
                {
                    "error": "Image generation already in progress",
                    "message": f"Failed to enqueue request: generation already in progress for dream {dream_id}",
                },
                status=429,
            )

        self.images.pop(dream_id, None)
        self.queue.append(dream_id)
        position = len(self.queue)
        self.logger.info(f"Enqueued dream {dream_id} at position {position}")
        return web.json_response(
            {"message": "Image generation queued successfully", "queuePosition": position},
            status=202,
        )

    async def handle_status(self, request):
        dream_id = request.match_info["id"]
        self.status_checks += 1

        if self.forced_status is not None:
            return self._forced_response()

        if self.fail_next > 0 or random.random() < self.error_rate:
            self.fail_next = max(self.fail_next - 1, 0)
            self.logger.info("Returning error status")
            return web.json_response(
                {"message": "Failed to fetch dream status"}, status=self.error_status
            )

        self._advance()

        if dream_id in self.images:
            self.logger.info(f"Returning completed status for dream {dream_id}")
            return web.json_response({"status": "completed", "imageUrl": self.images[dream_id]})

        position = self._position(dream_id)
        if position is not None:
            self.logger.info(f"Returning processing status for dream {dream_id} (position {position})")
            return web.json_response(
                {
                    "status": "processing",
                    "message": "Image generation in progress",
                    "queuePosition": position,
                },
                status=202,
            )

        self.logger.info(f"No generation in progress for dream {dream_id}")
        return web.Response(status=204)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
