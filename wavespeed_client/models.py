import json
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PredictionStatus(str, Enum):
    created = "created"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PredictionStatus.completed, PredictionStatus.failed)


class Prediction(BaseModel):
    """Snapshot of a remote job as returned by a single fetch"""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    model: Optional[str] = None
    status: PredictionStatus = PredictionStatus.created
    input: dict[str, Any] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    execution_time: Optional[float] = Field(default=None, alias="executionTime")
    has_nsfw_contents: list[bool] = Field(default_factory=list)
    created_at: Optional[str] = None

    @field_validator("outputs", "has_nsfw_contents", mode="before")
    @classmethod
    def _null_list_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("input", mode="before")
    @classmethod
    def _null_input_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_connection_retries: int = Field(default=5, ge=0)
    max_retries: int = Field(default=0, ge=0)
    retry_interval: float = Field(default=1.0, ge=0)
    connection_timeout: float = Field(default=10.0, gt=0)
    timeout: Optional[float] = Field(default=36000.0, ge=0)  # None waits forever
    poll_interval: float = Field(default=1.0, ge=0)
    enable_sync_mode: bool = False

    def override(self, **overrides: Any) -> "RetryPolicy":
        """Returns a validated copy with the non-None overrides applied"""
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        return RetryPolicy(**{**self.model_dump(), **updates})

    def request_timeout(self) -> float:
        """Per-call deadline: the connection timeout, capped by the overall budget"""
        if self.timeout:
            return min(self.connection_timeout, self.timeout)
        return self.connection_timeout


class RunResult(BaseModel):
    outputs: list[str]
    task_id: Optional[str]
    elapsed_time: float
    attempts: int = 1


class UploadData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    download_url: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    type: Optional[str] = None


class UploadResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[int] = None
    message: Optional[str] = None
    data: Optional[UploadData] = None


class HTTPRequest(BaseModel):
    method: str
    url: str
    description: str
    json_body: Optional[dict[str, Any]] = None
    # Multipart bodies can only be sent once, so a fresh one is built per attempt
    form_factory: Optional[Callable[[], Any]] = None


class HTTPResponse(BaseModel):
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def payload(self) -> Any:
        return json.loads(self.text)
