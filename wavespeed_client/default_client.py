from pathlib import Path
from typing import Any, Optional, Union

from wavespeed_client.models import RunResult
from wavespeed_client.wavespeed_client import Client

_default_client: Optional[Client] = None


def init(api_key: Optional[str] = None, **kwargs: Any) -> Client:
    """Replace the default client with one built from the given arguments"""
    global _default_client
    _default_client = Client(api_key=api_key, **kwargs)
    return _default_client


def reset() -> None:
    global _default_client
    _default_client = None


def get_default_client() -> Client:
    if _default_client is None:
        return init()
    return _default_client


async def run(model: str, input: Optional[dict[str, Any]] = None, **options: Any) -> RunResult:
    """Run a model with the default client; see Client.run for the options"""
    return await get_default_client().run(model, input, **options)


async def upload(file: Union[str, Path], *, timeout: Optional[float] = None) -> str:
    return await get_default_client().upload(file, timeout=timeout)
