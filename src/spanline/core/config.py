from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from spanline.core.exceptions import ConfigurationError


class TracingConfig(BaseModel):
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    """Fraction of root spans that are recorded (``1.0`` records everything)."""
    buffer_timeout: float = Field(default=5.0, gt=0.0, le=3600.0)
    """Seconds a trace may stay buffered before open spans are force-closed."""
    sweep_interval: float = Field(default=1.0, gt=0.0, le=60.0)
    sink_url: str | None = None
    sink_api_key: str | None = None
    environment: str = "development"
    max_queue_size: int = Field(default=1000, ge=1, le=100_000)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> TracingConfig:
        """Create a :class:`TracingConfig` from ``SPANLINE_*`` environment variables.

        Reads the following env vars (all optional):

        * ``SPANLINE_SAMPLE_RATE`` → ``sample_rate`` (float, 0.0–1.0)
        * ``SPANLINE_BUFFER_TIMEOUT`` → ``buffer_timeout`` (float seconds)
        * ``SPANLINE_SWEEP_INTERVAL`` → ``sweep_interval`` (float seconds)
        * ``SPANLINE_SINK_URL`` → ``sink_url``
        * ``SPANLINE_SINK_API_KEY`` → ``sink_api_key``
        * ``SPANLINE_ENVIRONMENT`` → ``environment``
        * ``SPANLINE_LOG_LEVEL`` → ``log_level`` (``DEBUG``, ``INFO``, ``WARNING``, ``ERROR``)
        * ``SPANLINE_LOG_JSON`` → ``log_json`` (``true`` / ``false``)

        Any variable that is not set or is empty is left at its default value.

        Raises:
            ConfigurationError: If a variable holds a value that does not
                validate.
        """
        env_map = {
            "SPANLINE_SAMPLE_RATE": "sample_rate",
            "SPANLINE_BUFFER_TIMEOUT": "buffer_timeout",
            "SPANLINE_SWEEP_INTERVAL": "sweep_interval",
            "SPANLINE_SINK_URL": "sink_url",
            "SPANLINE_SINK_API_KEY": "sink_api_key",
            "SPANLINE_ENVIRONMENT": "environment",
            "SPANLINE_LOG_LEVEL": "log_level",
            "SPANLINE_LOG_JSON": "log_json",
        }
        kwargs: dict[str, Any] = {}
        for var, field_name in env_map.items():
            value = os.environ.get(var)
            if value:
                kwargs[field_name] = value

        try:
            return cls(**kwargs)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid tracing configuration from environment: {exc}",
                code="INVALID_ENV",
                details={"variables": sorted(kwargs)},
            ) from exc
