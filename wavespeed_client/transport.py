import asyncio
import random
from typing import Callable, Optional

import aiohttp
from loguru import logger
from wavespeed_client.errors import (
    ConnectionExhaustedError,
    ErrorKind,
    HTTPStatusError,
    TransportError,
)
from wavespeed_client.models import HTTPRequest, HTTPResponse

Backoff = Callable[[float, int], float]
RetryPredicate = Callable[[str, Optional[HTTPResponse], Optional[TransportError]], bool]


def linear_backoff(interval: float, attempt: int) -> float:
    """Delay before retry `attempt` (1-indexed): interval * attempt"""
    return interval * attempt


def exponential_backoff(interval: float, attempt: int) -> float:
    """Doubles the delay per attempt and adds up to 50% random jitter"""
    delay = interval * (2**attempt)
    return delay + random.uniform(0, delay / 2)


def should_retry(
    method: str,
    response: Optional[HTTPResponse] = None,
    error: Optional[TransportError] = None,
) -> bool:
    """Transport failures and 429 always retry; 5xx only for idempotent reads"""
    if error is not None:
        return True
    if response is None:
        return False
    if response.status == 429:
        return True
    return method.upper() == "GET" and response.status >= 500


async def send_once(
    session: aiohttp.ClientSession,
    request: HTTPRequest,
    timeout: Optional[float],
    connection_timeout: Optional[float] = None,
) -> HTTPResponse:
    """Issues a single HTTP call; any status comes back as a response"""
    client_timeout = aiohttp.ClientTimeout(total=timeout, sock_connect=connection_timeout)
    kwargs = {"timeout": client_timeout}
    if request.form_factory is not None:
        kwargs["data"] = request.form_factory()
    elif request.json_body is not None:
        kwargs["json"] = request.json_body

    try:
        async with session.request(request.method, request.url, **kwargs) as response:
            # Error pages from proxies are not always UTF-8
            text = await response.text(errors="replace")
            return HTTPResponse(status=response.status, text=text)
    except asyncio.TimeoutError as e:
        raise TransportError(
            f"Request timeout after {timeout} seconds: {request.method} {request.url}",
            kind=ErrorKind.timeout,
        ) from e
    except aiohttp.ClientError as e:
        raise TransportError(
            f"Connection error: {request.method} {request.url}: {e!r}",
            kind=ErrorKind.connection,
        ) from e


async def send_with_retry(
    session: aiohttp.ClientSession,
    request: HTTPRequest,
    *,
    max_connection_retries: int,
    retry_interval: float,
    timeout: Optional[float],
    connection_timeout: Optional[float] = None,
    backoff: Backoff = linear_backoff,
    retry_predicate: RetryPredicate = should_retry,
    task_id: Optional[str] = None,
    deadline: Optional[float] = None,
) -> HTTPResponse:
    """Retries `send_once` on transient failures, up to max_connection_retries extra attempts.

    A response the predicate does not want retried is returned as-is, whatever its
    status. When every attempt meets the predicate, ConnectionExhaustedError is raised
    carrying the last underlying failure. `deadline` is an event loop time; backoff
    sleeps never run past it and no attempt starts after it.
    """
    loop = asyncio.get_event_loop()
    total_attempts = max_connection_retries + 1
    last_error = None
    attempt = 0

    while attempt < total_attempts:
        attempt += 1
        response = None
        try:
            response = await send_once(session, request, timeout, connection_timeout)
        except TransportError as e:
            last_error = e
            if not retry_predicate(request.method, None, e):
                raise
        else:
            if not retry_predicate(request.method, response, None):
                return response
            last_error = HTTPStatusError(
                f"HTTP {response.status}: {response.text}",
                status_code=response.status,
                body=response.text,
                task_id=task_id,
            )

        if attempt >= total_attempts:
            break

        delay = backoff(retry_interval, attempt)
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            delay = min(delay, remaining)

        logger.warning(
            f"{request.description}: attempt {attempt}/{total_attempts} failed "
            f"({last_error}), retrying in {delay:.2f}s"
        )
        await asyncio.sleep(delay)

        if deadline is not None and loop.time() >= deadline:
            break

    raise ConnectionExhaustedError(
        f"{request.description} after {attempt} attempts: {last_error}",
        attempts=attempt,
        last_error=last_error,
        task_id=task_id,
    )
