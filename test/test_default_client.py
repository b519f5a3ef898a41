import pytest
from wavespeed_client import config, default_client
from wavespeed_client.errors import ConfigurationError
from wavespeed_client.models import RetryPolicy

MODEL = "wavespeed-ai/z-image/turbo"


def test_default_client_is_lazy_and_shared(monkeypatch):
    monkeypatch.setenv("WAVESPEED_API_KEY", "env-key")

    client = default_client.get_default_client()

    assert client.api_key == "env-key"
    assert default_client.get_default_client() is client


def test_reset_rebuilds_client():
    first = default_client.init("first-key")
    default_client.reset()
    second = default_client.get_default_client()

    assert second is not first
    assert second.api_key is None


def test_default_policy_reads_environment(monkeypatch):
    monkeypatch.setenv("WAVESPEED_MAX_RETRIES", "2")
    monkeypatch.setenv("WAVESPEED_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("WAVESPEED_BASE_URL", "https://staging.example.com")

    policy = config.default_policy()

    assert policy.max_retries == 2
    assert policy.poll_interval == 0.5
    assert policy.max_connection_retries == RetryPolicy().max_connection_retries
    assert config.get_base_url() == "https://staging.example.com"


@pytest.mark.asyncio
async def test_module_run_uses_default_client(server, policy, monkeypatch):
    server_instance, base_url = server
    monkeypatch.setenv("WAVESPEED_API_KEY", "test-key")
    monkeypatch.setenv("WAVESPEED_BASE_URL", base_url)
    monkeypatch.setenv("WAVESPEED_POLL_INTERVAL", "0.01")

    result = await default_client.run(MODEL, {"prompt": "test"})

    assert result.outputs == ["https://example.com/out.png"]
    assert server_instance.count("POST", MODEL) == 1


@pytest.mark.asyncio
async def test_module_upload_uses_initialised_client(server, policy, tmp_path):
    server_instance, base_url = server
    path = tmp_path / "cat.jpg"
    path.write_bytes(b"jpeg")
    default_client.init("test-key", base_url=base_url, policy=policy)

    url = await default_client.upload(path)

    assert url == "https://cdn.example.com/uploads/cat.jpg"


@pytest.mark.asyncio
async def test_module_run_without_key_fails_before_io(server):
    server_instance, base_url = server
    default_client.init(base_url=base_url)

    with pytest.raises(ConfigurationError):
        await default_client.run(MODEL, {"prompt": "test"})
    assert server_instance.requests == []
