import asyncio

from image_generation_server import ImageGenerationServer
from dream_image_client.dream_image_client import DreamImageClient
from dream_image_client.errors import GenerationTimedOut, SubmissionFailed
from dream_image_client.models import Failed, NotStarted, Succeeded
from dream_image_client.settings import ClientSettings


async def progress_changed(progress):
    position = "-" if progress.position is None else progress.position
    print(f"[attempt {progress.attempt}] {progress.message} (queue position: {position})")


async def main():
    PORT = 8000
    server = ImageGenerationServer(completion_time=5.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    settings = ClientSettings(base_url=f"http://localhost:{PORT}", poll_interval=1.0, max_attempts=30)
    client = DreamImageClient.from_settings(settings)

    try:
        results = await asyncio.gather(
            client.generate_image("1", on_progress=progress_changed),
            client.generate_image("2", on_progress=progress_changed),
        )
        for result in results:
            if isinstance(result, Succeeded):
                print(f"Image ready: {result.artifact_url}")
            elif isinstance(result, NotStarted):
                print("No generation in progress")
            elif isinstance(result, Failed):
                print(f"Generation failed: {result.message}")
    except SubmissionFailed as e:
        print(f"Could not start generation: {e}")
    except GenerationTimedOut as e:
        print(f"Polling timed out: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
