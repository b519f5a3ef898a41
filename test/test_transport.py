import asyncio

import aiohttp
import pytest
from wavespeed_client.errors import (
    ConnectionExhaustedError,
    ErrorKind,
    HTTPStatusError,
    TransportError,
)
from wavespeed_client.models import HTTPRequest, HTTPResponse
from wavespeed_client.transport import (
    exponential_backoff,
    linear_backoff,
    send_once,
    send_with_retry,
    should_retry,
)
from wavespeed_client.wavespeed_client import Client

MODEL = "wavespeed-ai/z-image/turbo"


def _response(status: int) -> HTTPResponse:
    return HTTPResponse(status=status, text="")


@pytest.mark.parametrize(
    "method, status, expected",
    [
        ("GET", 200, False),
        ("GET", 404, False),
        ("GET", 429, True),
        ("GET", 500, True),
        ("GET", 503, True),
        ("POST", 429, True),
        ("POST", 500, False),
        ("POST", 502, False),
    ],
)
def test_should_retry_statuses(method, status, expected):
    assert should_retry(method, _response(status)) is expected


def test_should_retry_transport_failures_for_any_method():
    error = TransportError("boom", kind=ErrorKind.connection)
    assert should_retry("POST", None, error)
    assert should_retry("GET", None, error)


def test_linear_backoff():
    assert [linear_backoff(0.5, k) for k in (1, 2, 3)] == [0.5, 1.0, 1.5]


def test_exponential_backoff_bounds():
    for attempt in (1, 2, 3):
        delay = exponential_backoff(1.0, attempt)
        assert 2**attempt <= delay <= 2**attempt * 1.5


@pytest.mark.asyncio
async def test_send_once_returns_error_statuses(server):
    server_instance, base_url = server
    server_instance.result_failures = [500]
    request = HTTPRequest(
        method="GET", url=f"{base_url}/api/v3/predictions/x/result", description="fetch"
    )

    async with aiohttp.ClientSession(headers={"Authorization": "Bearer test-key"}) as session:
        response = await send_once(session, request, timeout=2.0)

    assert response.status == 500
    assert not response.ok
    assert response.text == "Scripted error 500"


@pytest.mark.asyncio
async def test_get_server_errors_retried_until_success(server, policy):
    server_instance, base_url = server
    client = Client(api_key="test-key", base_url=base_url, policy=policy)
    prediction = await client.create(MODEL, {"prompt": "test"})
    server_instance.result_failures = [500, 503]

    result = await client.get_prediction(prediction.id, max_connection_retries=3)

    assert result.status.is_terminal
    assert server_instance.count("GET", "/result") == 3


@pytest.mark.asyncio
async def test_get_server_errors_exhaust_retries(server, policy):
    """Persistent 5xx on GET makes exactly max_connection_retries + 1 attempts."""
    server_instance, base_url = server
    client = Client(api_key="test-key", base_url=base_url, policy=policy)
    prediction = await client.create(MODEL, {"prompt": "test"})
    server_instance.result_failures = [503] * 10

    with pytest.raises(ConnectionExhaustedError, match="after 3 attempts") as exc_info:
        await client.get_prediction(prediction.id, max_connection_retries=2)

    assert exc_info.value.attempts == 3
    assert exc_info.value.status_code == 503
    assert exc_info.value.kind == ErrorKind.http_status
    assert isinstance(exc_info.value.last_error, HTTPStatusError)
    assert server_instance.count("GET", "/result") == 3


@pytest.mark.asyncio
async def test_rate_limited_post_is_retried(server, policy):
    server_instance, base_url = server
    server_instance.submit_failures = [429]
    client = Client(api_key="test-key", base_url=base_url, policy=policy)

    prediction = await client.create(MODEL, {"prompt": "test"})

    assert prediction.id in server_instance.jobs
    assert server_instance.count("POST", MODEL) == 2


@pytest.mark.asyncio
async def test_post_server_error_not_retried(server, policy):
    server_instance, base_url = server
    server_instance.submit_failures = [500]
    client = Client(api_key="test-key", base_url=base_url, policy=policy)

    with pytest.raises(HTTPStatusError, match="Failed to submit prediction: HTTP 500") as exc_info:
        await client.create(MODEL, {"prompt": "test"}, max_connection_retries=3)

    assert exc_info.value.status_code == 500
    assert server_instance.count("POST", MODEL) == 1


@pytest.mark.asyncio
async def test_server_unavailable(unused_tcp_port_factory, policy):
    client = Client(
        api_key="test-key",
        base_url=f"http://localhost:{unused_tcp_port_factory()}",
        policy=policy,
    )

    with pytest.raises(ConnectionExhaustedError, match="Failed to submit prediction after 3 attempts") as exc_info:
        await client.run(MODEL, {"prompt": "test"})

    assert exc_info.value.kind == ErrorKind.connection
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_request_timeout_is_retried(server, policy):
    server_instance, base_url = server
    server_instance.response_delay = 0.5
    client = Client(
        api_key="test-key", base_url=base_url, policy=policy.override(connection_timeout=0.1)
    )

    with pytest.raises(ConnectionExhaustedError) as exc_info:
        await client.create(MODEL, {"prompt": "test"}, max_connection_retries=1)

    assert exc_info.value.kind == ErrorKind.timeout
    assert exc_info.value.attempts == 2
    assert server_instance.count("POST", MODEL) == 2


@pytest.mark.asyncio
async def test_custom_retry_predicate(unused_tcp_port_factory):
    request = HTTPRequest(
        method="GET",
        url=f"http://localhost:{unused_tcp_port_factory()}/api/v3/predictions/x/result",
        description="fetch",
    )

    async with aiohttp.ClientSession() as session:
        with pytest.raises(TransportError) as exc_info:
            await send_with_retry(
                session,
                request,
                max_connection_retries=5,
                retry_interval=0.01,
                timeout=1.0,
                retry_predicate=lambda method, response, error: False,
            )

    assert exc_info.value.kind == ErrorKind.connection


@pytest.mark.parametrize("failures", [1, 2, 5])
@pytest.mark.parametrize("method, status", [("GET", 429), ("POST", 429), ("GET", 503)])
@pytest.mark.asyncio
async def test_retry_eligible_statuses_attempt_count(server, policy, method, status, failures):
    """Retry-eligible statuses make min(failures, max_connection_retries) + 1 attempts."""
    server_instance, base_url = server
    client = Client(api_key="test-key", base_url=base_url, policy=policy)
    max_connection_retries = policy.max_connection_retries

    if method == "GET":
        prediction = await client.create(MODEL, {"prompt": "test"})
        server_instance.result_failures = [status] * failures
        call = client.get_prediction(prediction.id)
        fragment = "/result"
    else:
        server_instance.submit_failures = [status] * failures
        call = client.create(MODEL, {"prompt": "test"})
        fragment = MODEL

    if failures <= max_connection_retries:
        await call
    else:
        with pytest.raises(ConnectionExhaustedError) as exc_info:
            await call
        assert exc_info.value.status_code == status

    assert server_instance.count(method, fragment) == min(failures, max_connection_retries) + 1


@pytest.mark.asyncio
async def test_send_once_tolerates_non_utf8_body(server):
    server_instance, base_url = server
    server_instance.result_failures = [(502, b"<html>\xff\xfe gateway</html>")]
    request = HTTPRequest(
        method="GET", url=f"{base_url}/api/v3/predictions/x/result", description="fetch"
    )

    async with aiohttp.ClientSession(headers={"Authorization": "Bearer test-key"}) as session:
        response = await send_once(session, request, timeout=2.0)

    assert response.status == 502
    assert "gateway" in response.text
    assert "�" in response.text


@pytest.mark.asyncio
async def test_non_utf8_error_page_is_a_typed_error(server, policy):
    server_instance, base_url = server
    server_instance.submit_failures = [(502, b"<html>\xff\xfe gateway</html>")]
    client = Client(api_key="test-key", base_url=base_url, policy=policy)

    with pytest.raises(HTTPStatusError, match="HTTP 502") as exc_info:
        await client.create(MODEL, {"prompt": "test"})

    assert exc_info.value.retryable
    assert "gateway" in exc_info.value.body


@pytest.mark.asyncio
async def test_backoff_stops_at_deadline(server, policy):
    server_instance, base_url = server
    server_instance.result_failures = [503] * 10
    request = HTTPRequest(
        method="GET", url=f"{base_url}/api/v3/predictions/x/result", description="fetch"
    )
    loop = asyncio.get_event_loop()
    start = loop.time()

    async with aiohttp.ClientSession(headers={"Authorization": "Bearer test-key"}) as session:
        with pytest.raises(ConnectionExhaustedError) as exc_info:
            await send_with_retry(
                session,
                request,
                max_connection_retries=5,
                retry_interval=1.0,
                timeout=2.0,
                deadline=start + 0.1,
            )

    assert loop.time() - start < 0.9
    assert exc_info.value.attempts < 6
    assert exc_info.value.status_code == 503
