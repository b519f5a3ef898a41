import os
from typing import Optional

from wavespeed_client.models import RetryPolicy

DEFAULT_BASE_URL = "https://api.wavespeed.ai"

# ==============================
# Environment overrides for RetryPolicy fields
# ==============================

_POLICY_ENV = {
    "poll_interval": "WAVESPEED_POLL_INTERVAL",
    "timeout": "WAVESPEED_TIMEOUT",
    "max_retries": "WAVESPEED_MAX_RETRIES",
    "max_connection_retries": "WAVESPEED_MAX_CONNECTION_RETRIES",
    "retry_interval": "WAVESPEED_RETRY_INTERVAL",
    "connection_timeout": "WAVESPEED_CONNECTION_TIMEOUT",
}


def get_api_key() -> Optional[str]:
    return os.getenv("WAVESPEED_API_KEY") or None


def get_base_url() -> str:
    return os.getenv("WAVESPEED_BASE_URL", DEFAULT_BASE_URL)


def default_policy() -> RetryPolicy:
    """Build the RetryPolicy defaults, letting WAVESPEED_* variables override them"""
    values = {}
    for field, env_name in _POLICY_ENV.items():
        raw = os.getenv(env_name)
        if raw:
            values[field] = raw
    return RetryPolicy(**values)
