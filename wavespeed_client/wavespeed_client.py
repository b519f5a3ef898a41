import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Optional, Union

import aiohttp
from loguru import logger
from pydantic import ValidationError
from wavespeed_client import config
from wavespeed_client.errors import (
    ConfigurationError,
    HTTPStatusError,
    InvalidResponseError,
    PredictionFailedError,
    PredictionTimeoutError,
    WaveSpeedError,
)
from wavespeed_client.models import (
    HTTPRequest,
    HTTPResponse,
    Prediction,
    PredictionStatus,
    RetryPolicy,
    RunResult,
    UploadResponse,
)
from wavespeed_client.transport import (
    exponential_backoff,
    linear_backoff,
    send_with_retry,
)


class Client:
    """WaveSpeed API client.

    Example:
        client = Client("your-api-key")
        result = await client.run("wavespeed-ai/z-image/turbo", {"prompt": "Cat"})
        print(result.outputs[0])

        # Single request that blocks until the prediction is done
        await client.run("wavespeed-ai/z-image/turbo", {"prompt": "Cat"}, enable_sync_mode=True)

        # Resubmit up to 3 times on transient failures
        await client.run("wavespeed-ai/z-image/turbo", {"prompt": "Cat"}, max_retries=3)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        on_status_change: Optional[Callable[[Prediction], Any]] = None,
    ):
        self.api_key = api_key or config.get_api_key()
        self.base_url = (base_url or config.get_base_url()).rstrip("/")
        self.policy = policy or config.default_policy()
        self.logger = logger
        self.on_status_change = on_status_change

    def _get_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError(
                "API key is required. Set WAVESPEED_API_KEY environment variable "
                "or pass api_key to Client()."
            )
        return {"Authorization": f"Bearer {self.api_key}"}

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(headers=self._get_headers())

    def _resolve_policy(self, **overrides: Any) -> RetryPolicy:
        return self.policy.override(**overrides)

    def _decode(self, response: HTTPResponse, description: str) -> dict:
        try:
            body = response.payload()
        except json.JSONDecodeError as e:
            raise InvalidResponseError(
                f"{description}: response is not JSON: {response.text[:200]}"
            ) from e
        if not isinstance(body, dict):
            raise InvalidResponseError(f"{description}: unexpected response: {body!r}")
        return body

    def _parse_prediction(self, body: dict, task_id: Optional[str] = None) -> Prediction:
        try:
            return Prediction.model_validate(body.get("data") or {})
        except ValidationError as e:
            raise InvalidResponseError(
                f"Malformed prediction in response: {e}", task_id=task_id
            ) from e

    async def _submit(
        self,
        session: aiohttp.ClientSession,
        model: str,
        input: Optional[dict[str, Any]],
        policy: RetryPolicy,
    ) -> tuple[Optional[str], dict]:
        """Submit a prediction request.

        Returns (request_id, response body). In sync mode request_id is None and the
        body holds the terminal result, since the remote service keeps the request
        open until the job is done.
        """
        if not model:
            raise ValueError("model must be a non-empty string")

        body = dict(input or {})
        if policy.enable_sync_mode:
            body["enable_sync_mode"] = True
            # The request itself spans the whole job, so only the overall budget bounds it
            timeout = policy.timeout
        else:
            timeout = policy.request_timeout()

        request = HTTPRequest(
            method="POST",
            url=f"{self.base_url}/api/v3/{model}",
            description="Failed to submit prediction",
            json_body=body,
        )
        response = await send_with_retry(
            session,
            request,
            max_connection_retries=policy.max_connection_retries,
            retry_interval=policy.retry_interval,
            timeout=timeout,
            connection_timeout=policy.connection_timeout,
            backoff=linear_backoff,
        )

        if not response.ok:
            self.logger.error(f"HTTP error {response.status} submitting to {model}: {response.text}")
            raise HTTPStatusError(
                f"Failed to submit prediction: HTTP {response.status}: {response.text}",
                status_code=response.status,
                body=response.text,
            )

        result = self._decode(response, "Failed to submit prediction")
        if policy.enable_sync_mode:
            return None, result

        request_id = (result.get("data") or {}).get("id")
        if not request_id:
            raise InvalidResponseError(f"No request ID in response: {json.dumps(result)}")

        self.logger.info(f"Submitted prediction {request_id} to {model}")
        return request_id, result

    async def _get_result(
        self,
        session: aiohttp.ClientSession,
        request_id: str,
        policy: RetryPolicy,
        deadline: Optional[float] = None,
    ) -> Prediction:
        """Fetch the current state of a prediction once, with connection retries"""
        request = HTTPRequest(
            method="GET",
            url=f"{self.base_url}/api/v3/predictions/{request_id}/result",
            description=f"Failed to get result for task {request_id}",
        )
        response = await send_with_retry(
            session,
            request,
            max_connection_retries=policy.max_connection_retries,
            retry_interval=policy.retry_interval,
            timeout=policy.request_timeout(),
            connection_timeout=policy.connection_timeout,
            backoff=linear_backoff,
            task_id=request_id,
            deadline=deadline,
        )

        if not response.ok:
            self.logger.error(f"HTTP error {response.status} fetching task {request_id}: {response.text}")
            raise HTTPStatusError(
                f"Failed to get result for task {request_id}: HTTP {response.status}: {response.text}",
                status_code=response.status,
                body=response.text,
                task_id=request_id,
            )

        body = self._decode(response, f"Failed to get result for task {request_id}")
        return self._parse_prediction(body, task_id=request_id)

    async def _handle_status_change(
        self, prediction: Prediction, last_status: Optional[PredictionStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != prediction.status and self.on_status_change is not None:
            self.logger.debug(f"Prediction {prediction.id} status changed to {prediction.status.value}")
            result = self.on_status_change(prediction)
            if asyncio.iscoroutine(result):
                await result

    async def _wait(
        self, session: aiohttp.ClientSession, request_id: str, policy: RetryPolicy
    ) -> Prediction:
        """Poll until the prediction is terminal or the overall timeout elapses.

        Transient read failures that outlast the connection retries do not abandon
        the job: polling of the same prediction resumes on the next tick as long as
        a bounded timeout remains.
        """
        loop = asyncio.get_event_loop()
        deadline = None if policy.timeout is None else loop.time() + policy.timeout
        last_status = None

        while True:
            if deadline is not None and loop.time() >= deadline:
                raise PredictionTimeoutError(policy.timeout, task_id=request_id)

            try:
                prediction = await self._get_result(session, request_id, policy, deadline)
            except WaveSpeedError as e:
                if deadline is None or not e.retryable:
                    raise
                self.logger.warning(f"Transient error polling task {request_id}, polling again: {e}")
            else:
                await self._handle_status_change(prediction, last_status)
                last_status = prediction.status

                if prediction.status == PredictionStatus.completed:
                    self.logger.info(f"Prediction {request_id} completed")
                    return prediction
                if prediction.status == PredictionStatus.failed:
                    raise PredictionFailedError(request_id, prediction.error)

                self.logger.debug(f"Prediction {request_id} is {prediction.status.value}, waiting {policy.poll_interval}s")

            delay = policy.poll_interval
            if deadline is not None:
                delay = max(0.0, min(delay, deadline - loop.time()))
            await asyncio.sleep(delay)

    def _is_retryable_error(self, error: BaseException) -> bool:
        """Decide whether a failed attempt is worth a brand new submission"""
        if not isinstance(error, WaveSpeedError):
            return False
        if isinstance(error, PredictionFailedError):
            return error.retryable
        # Read failures for a job that already exists are the poll loop's to recover
        if error.task_id is not None:
            return False
        return error.retryable

    async def _run_once(
        self, session: aiohttp.ClientSession, model: str, input: Optional[dict], policy: RetryPolicy
    ) -> tuple[Optional[str], Prediction]:
        request_id, body = await self._submit(session, model, input, policy)

        if policy.enable_sync_mode:
            prediction = self._parse_prediction(body)
            if prediction.status != PredictionStatus.completed:
                raise PredictionFailedError(prediction.id or "unknown", prediction.error)
            await self._handle_status_change(prediction, None)
            return prediction.id, prediction

        return request_id, await self._wait(session, request_id, policy)

    async def run(
        self,
        model: str,
        input: Optional[dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        enable_sync_mode: Optional[bool] = None,
        max_retries: Optional[int] = None,
        max_connection_retries: Optional[int] = None,
        retry_interval: Optional[float] = None,
    ) -> RunResult:
        """Run a model and wait for its outputs.

        Args:
            model: Model identifier, e.g. "wavespeed-ai/flux-dev".
            input: Input parameters for the model.
            timeout: Maximum seconds to wait for completion.
            poll_interval: Seconds between status checks.
            enable_sync_mode: Use one blocking request instead of polling.
            max_retries: Task-level retries; each one submits a new prediction.
            max_connection_retries: Retries for each individual HTTP request.
            retry_interval: Base interval between retries in seconds.

        Any argument left as None falls back to the client's policy.

        Raises:
            ConfigurationError: If no API key is configured.
            PredictionFailedError: If the prediction fails.
            PredictionTimeoutError: If the prediction does not finish in time.
        """
        policy = self._resolve_policy(
            timeout=timeout,
            poll_interval=poll_interval,
            enable_sync_mode=enable_sync_mode,
            max_retries=max_retries,
            max_connection_retries=max_connection_retries,
            retry_interval=retry_interval,
        )
        start_time = asyncio.get_event_loop().time()

        async with self._session() as session:
            for attempt in range(policy.max_retries + 1):
                try:
                    task_id, prediction = await self._run_once(session, model, input, policy)
                    return RunResult(
                        outputs=prediction.outputs,
                        task_id=task_id,
                        elapsed_time=asyncio.get_event_loop().time() - start_time,
                        attempts=attempt + 1,
                    )
                except WaveSpeedError as e:
                    if not self._is_retryable_error(e) or attempt >= policy.max_retries:
                        raise

                    delay = policy.retry_interval * (attempt + 1)
                    self.logger.warning(
                        f"Task attempt {attempt + 1}/{policy.max_retries + 1} failed: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

    async def create(
        self, model: str, input: Optional[dict[str, Any]] = None, **overrides: Any
    ) -> Prediction:
        """Submit a prediction and return it without waiting for completion"""
        policy = self._resolve_policy(**overrides).override(enable_sync_mode=False)

        async with self._session() as session:
            _, body = await self._submit(session, model, input, policy)

        prediction = self._parse_prediction(body)
        if prediction.model is None:
            prediction = prediction.model_copy(update={"model": model})
        return prediction

    async def get_prediction(self, request_id: str, **overrides: Any) -> Prediction:
        """Fetch the current state of a prediction"""
        policy = self._resolve_policy(**overrides)
        async with self._session() as session:
            return await self._get_result(session, request_id, policy)

    async def wait(
        self,
        request_id: str,
        *,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Prediction:
        """Poll an existing prediction until it completes.

        Raises PredictionFailedError if it fails and PredictionTimeoutError if
        it does not finish within the timeout.
        """
        policy = self._resolve_policy(timeout=timeout, poll_interval=poll_interval)
        async with self._session() as session:
            return await self._wait(session, request_id, policy)

    async def upload(self, file: Union[str, Path], *, timeout: Optional[float] = None) -> str:
        """Upload a local file and return its download URL.

        Raises:
            ConfigurationError: If no API key is configured.
            FileNotFoundError: If the file does not exist.
            HTTPStatusError: If the upload request is rejected.
            InvalidResponseError: If the response reports a failure or has no URL.
        """
        headers = self._get_headers()
        path = Path(file)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {file}")

        content = path.read_bytes()
        filename = path.name

        def build_form() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field("file", content, filename=filename)
            return form

        policy = self._resolve_policy(timeout=timeout)
        request = HTTPRequest(
            method="POST",
            url=f"{self.base_url}/api/v3/media/upload/binary",
            description="Failed to upload file",
            form_factory=build_form,
        )

        async with aiohttp.ClientSession(headers=headers) as session:
            response = await send_with_retry(
                session,
                request,
                max_connection_retries=policy.max_connection_retries,
                retry_interval=policy.retry_interval,
                timeout=policy.request_timeout(),
                connection_timeout=policy.connection_timeout,
                backoff=exponential_backoff,
            )

        if not response.ok:
            self.logger.error(f"HTTP error {response.status} uploading {filename}: {response.text}")
            raise HTTPStatusError(
                f"Failed to upload file: HTTP {response.status}: {response.text}",
                status_code=response.status,
                body=response.text,
            )

        try:
            result = UploadResponse.model_validate(self._decode(response, "Failed to upload file"))
        except ValidationError as e:
            raise InvalidResponseError(f"Upload failed: malformed response: {e}") from e

        if result.code != 200:
            raise InvalidResponseError(f"Upload failed: {result.message or 'Unknown error'}")

        download_url = result.data.download_url if result.data else None
        if not download_url:
            raise InvalidResponseError("Upload failed: no download_url in response")

        self.logger.info(f"Uploaded {filename} to {download_url}")
        return download_url
