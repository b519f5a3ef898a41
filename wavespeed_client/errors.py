import re
from enum import Enum
from typing import Optional

# Remote-supplied failure text is free-form; these are the transient conditions worth a new job
_TRANSIENT_REMOTE_ERROR = re.compile(r"timeout|timed out|connection|http 5\d\d|\b429\b", re.IGNORECASE)


class ErrorKind(str, Enum):
    configuration = "configuration"
    connection = "connection"
    timeout = "timeout"
    http_status = "http_status"
    invalid_response = "invalid_response"
    remote_failure = "remote_failure"
    wait_timeout = "wait_timeout"


class WaveSpeedError(Exception):
    """Base class for every error raised by the client"""

    kind: ErrorKind = ErrorKind.invalid_response

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        task_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.task_id = task_id

    @property
    def retryable(self) -> bool:
        if self.kind in (ErrorKind.connection, ErrorKind.timeout):
            return True
        if self.kind is ErrorKind.http_status and self.status_code is not None:
            return self.status_code == 429 or self.status_code >= 500
        return False


class ConfigurationError(WaveSpeedError):
    kind = ErrorKind.configuration


class TransportError(WaveSpeedError):
    """A single HTTP call failed before a response was received"""

    def __init__(self, message: str, *, kind: ErrorKind = ErrorKind.connection):
        super().__init__(message)
        self.kind = kind


class HTTPStatusError(WaveSpeedError):
    kind = ErrorKind.http_status

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: str = "",
        task_id: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code, task_id=task_id)
        self.body = body


class ConnectionExhaustedError(WaveSpeedError):
    """Connection-level retries ran out; carries the kind of the last failure"""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: WaveSpeedError,
        task_id: Optional[str] = None,
    ):
        super().__init__(message, status_code=last_error.status_code, task_id=task_id)
        self.kind = last_error.kind
        self.attempts = attempts
        self.last_error = last_error


class InvalidResponseError(WaveSpeedError):
    kind = ErrorKind.invalid_response


class PredictionFailedError(WaveSpeedError):
    kind = ErrorKind.remote_failure

    def __init__(self, task_id: str, error: Optional[str] = None):
        self.error = error or "Unknown error"
        super().__init__(
            f"Prediction failed (task_id: {task_id}): {self.error}", task_id=task_id
        )

    @property
    def retryable(self) -> bool:
        return bool(_TRANSIENT_REMOTE_ERROR.search(self.error))


class PredictionTimeoutError(WaveSpeedError, TimeoutError):
    kind = ErrorKind.wait_timeout

    def __init__(self, timeout: float, task_id: Optional[str] = None):
        self.timeout = timeout
        super().__init__(
            f"Prediction timed out after {timeout} seconds (task_id: {task_id})",
            task_id=task_id,
        )
