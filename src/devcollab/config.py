"""Runtime settings, read from ``DEVCOLLAB_*`` environment variables."""

from __future__ import annotations

import logging
import os
from typing import Mapping

from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = ["ENV_PREFIX", "Settings"]

ENV_PREFIX = "DEVCOLLAB_"


class Settings(BaseModel):
    """Effective configuration of the hub server and the gateway client."""

    host: str = Field(default="0.0.0.0", description="Interface the server binds to")
    port: int = Field(default=8084, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    queue_size: int = Field(default=256, gt=0, description="Outbound events buffered per session")
    hub_queue_size: int = Field(default=1024, gt=0, description="Hub command queue bound")
    ping_interval: float = Field(default=54.0, gt=0, description="Seconds between keepalives")
    read_timeout: float = Field(default=60.0, gt=0, description="Seconds without a frame")
    write_timeout: float = Field(default=10.0, gt=0, description="Seconds allowed per write")

    gateway_url: str = Field(default="http://localhost:8083")
    gateway_api_key: str | None = Field(default=None, repr=False)
    gateway_timeout: float = Field(default=30.0, gt=0)

    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:3001",
            "http://localhost:3002",
            "http://localhost:3003",
            "http://localhost:5173",
        ],
        description="Browser origins allowed to call the HTTP API",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def _ping_before_deadline(self) -> Settings:
        if self.ping_interval >= self.read_timeout:
            raise ValueError("ping_interval must be shorter than read_timeout")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> Settings:
        """Build settings from ``DEVCOLLAB_<FIELD>`` variables.

        Args:
            environ: Mapping to read instead of :data:`os.environ`.
            **overrides: Values taking precedence over the environment;
                ``None`` values are ignored.

        Raises:
            pydantic.ValidationError: When a value does not validate.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)

    @property
    def ping_timeout(self) -> float:
        """How long a keepalive may go unanswered before the read deadline passes."""
        return self.read_timeout - self.ping_interval
