"""Connection settings for the remote meetings API.

Reads API settings from explicit arguments, environment variables, .env
files, and YAML config fallbacks.

Precedence (highest to lowest):
    Explicit args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    MEETING_SYNC_API_URL: API base URL (required)
    MEETING_SYNC_API_KEY: API key (required)
    MEETING_SYNC_TIMEOUT: Request timeout in seconds (optional, default: 30)
    MEETING_SYNC_MAX_RETRIES: Retries for retryable failures (optional, default: 3)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.granola.so/v1"


@dataclass
class Config:
    api_url: str
    api_key: str
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the URL is malformed or the API key is empty.
    """
    config.api_url = config.api_url.strip()

    if not config.api_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid API URL '{config.api_url}': must start with http:// or https://"
        )

    if not urlparse(config.api_url).hostname:
        raise ValueError(
            f"Invalid API URL '{config.api_url}': URL must include a hostname"
        )

    config.api_url = config.api_url.removesuffix("/")

    if not config.api_key.strip():
        raise ValueError(
            "API key cannot be empty. Set MEETING_SYNC_API_KEY environment variable."
        )

    if config.timeout <= 0:
        raise ValueError(f"Invalid timeout {config.timeout}: must be positive")

    if config.api_url.startswith("http://"):
        logger.warning(
            "API URL uses plain HTTP; the API key will be sent unencrypted."
        )


def _number_from_env(
    key: str, cast: type, low: float, high: float
) -> float | int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    api_url: str | None = None,
    api_key: str | None = None,
    yaml_fallbacks: dict | None = None,
    use_dotenv: bool = True,
) -> Config:
    """Load API configuration with unified precedence.

    Args:
        api_url: Override API URL.
        api_key: Override API key.
        yaml_fallbacks: The ``api`` section of the YAML config, used when
            neither an argument nor an env var supplies a value.
        use_dotenv: Load a ``.env`` file from the working directory first.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the API key is missing after checking all sources,
            or a numeric env var is out of range.
    """
    if use_dotenv:
        load_dotenv()

    fb = yaml_fallbacks or {}

    final_url = (
        api_url
        or os.getenv("MEETING_SYNC_API_URL")
        or fb.get("base_url")
        or DEFAULT_API_URL
    )

    final_key = api_key or os.getenv("MEETING_SYNC_API_KEY") or fb.get("api_key")
    if not final_key:
        raise ValueError(
            "API key not found. Set MEETING_SYNC_API_KEY environment variable, "
            "pass api_key, or add 'api_key' to the api section of config.yml."
        )

    timeout = _number_from_env("MEETING_SYNC_TIMEOUT", float, 1, 600)
    if timeout is None:
        timeout = float(fb.get("timeout", 30.0))

    max_retries = _number_from_env("MEETING_SYNC_MAX_RETRIES", int, 0, 10)
    if max_retries is None:
        max_retries = int(fb.get("max_retries", 3))

    config = Config(
        api_url=final_url,
        api_key=final_key.strip(),
        timeout=timeout,
        max_retries=max_retries,
        retry_delay=float(fb.get("retry_delay", 1.0)),
    )

    validate_config(config)

    return config
