import asyncio

from prediction_server import PredictionServer
from wavespeed_client.errors import PredictionFailedError, PredictionTimeoutError
from wavespeed_client.models import RetryPolicy
from wavespeed_client.wavespeed_client import Client


async def status_changed(prediction):
    print(f"Prediction {prediction.id} status changed to: {prediction.status.value}")


async def main():
    PORT = 8000
    server = PredictionServer(api_key="demo-key", processing_polls=3)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    policy = RetryPolicy(poll_interval=0.5, timeout=60.0, max_retries=2, retry_interval=0.5)
    client = Client(
        "demo-key",
        base_url=f"http://localhost:{PORT}",
        policy=policy,
        on_status_change=status_changed,
    )

    try:
        result = await client.run("wavespeed-ai/z-image/turbo", {"prompt": "A cat on a windowsill"})
        print(f"Outputs: {result.outputs}")
        print(f"Total time: {result.elapsed_time:.6f}s over {result.attempts} attempt(s)")

        sync_result = await client.run(
            "wavespeed-ai/z-image/turbo", {"prompt": "A dog"}, enable_sync_mode=True
        )
        print(f"Sync outputs: {sync_result.outputs}")
    except PredictionTimeoutError as e:
        print(f"Prediction timed out: {e}")
    except PredictionFailedError as e:
        print(f"Prediction failed: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
