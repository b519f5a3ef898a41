from typing import AsyncGenerator

import pytest
import pytest_asyncio
from prediction_server import PredictionServer
from wavespeed_client import default_client
from wavespeed_client.models import RetryPolicy

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[tuple[PredictionServer, str], None]:
    """Start and yield a PredictionServer on a random port with its base URL."""
    port = unused_tcp_port_factory()
    server_instance = PredictionServer(api_key="test-key")
    await server_instance.start(port=port)
    try:
        yield server_instance, BASE_URL_TEMPLATE.format(port)
    finally:
        await server_instance.stop()


@pytest.fixture
def policy() -> RetryPolicy:
    """Policy with short intervals so retry and polling paths run quickly."""
    return RetryPolicy(
        max_connection_retries=2,
        max_retries=0,
        retry_interval=0.01,
        connection_timeout=2.0,
        timeout=10.0,
        poll_interval=0.01,
    )


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "WAVESPEED_API_KEY",
        "WAVESPEED_BASE_URL",
        "WAVESPEED_POLL_INTERVAL",
        "WAVESPEED_TIMEOUT",
        "WAVESPEED_MAX_RETRIES",
        "WAVESPEED_MAX_CONNECTION_RETRIES",
        "WAVESPEED_RETRY_INTERVAL",
        "WAVESPEED_CONNECTION_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    default_client.reset()
    yield
    default_client.reset()
