"""
Configuration for the RCE manager.

Settings are a pydantic model so they can be built in code, loaded from a
``.env`` file, or validated from any mapping. ``setup_logging`` wires the
``rce-manager`` logger hierarchy the way the manager expects.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

from .constants import (
    AUTH_RETRY_DELAY,
    HEARTBEAT_INTERVAL,
    RECONNECT_INITIAL_DELAY,
    RECONNECT_MAX_DELAY,
    REQUEST_TIMEOUT,
    GPortalRoutes,
)
from .models import ServerOptions

logger = logging.getLogger("rce-manager")

LOG_FORMAT = "[rce-manager] %(asctime)s %(levelname)s %(name)s: %(message)s"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ManagerConfig(BaseModel):
    """Settings for one RCEManager instance."""

    # Authentication
    refresh_token: str = Field(
        default="",
        description="G-Portal refresh token supplied by the caller",
    )
    save_auth: bool = Field(
        default=False,
        description="Persist the credential to auth_file after every refresh",
    )
    auth_file: Path = Field(
        default=Path("auth.json"),
        description="Location of the persisted credential",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Level for the rce-manager logger")
    log_file: Optional[Path] = Field(
        default=None,
        description="Optional file that receives a copy of every log record",
    )

    # Servers registered at construction
    servers: list[ServerOptions] = Field(default_factory=list)

    # Endpoints
    token_url: str = Field(default=GPortalRoutes.REFRESH)
    command_url: str = Field(default=GPortalRoutes.COMMAND)
    websocket_url: str = Field(default=GPortalRoutes.WEBSOCKET)
    origin: str = Field(default=GPortalRoutes.ORIGIN)

    # Timing
    request_timeout: float = Field(
        default=REQUEST_TIMEOUT,
        gt=0.0,
        description="Seconds before an HTTP call to G-Portal is abandoned",
    )
    heartbeat_interval: float = Field(default=HEARTBEAT_INTERVAL, gt=0.0)
    auth_retry_delay: float = Field(default=AUTH_RETRY_DELAY, ge=0.0)
    reconnect_initial_delay: float = Field(default=RECONNECT_INITIAL_DELAY, ge=0.0)
    reconnect_max_delay: float = Field(default=RECONNECT_MAX_DELAY, ge=0.0)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: Union[str, int]) -> str:
        """Accept level names in any case or numeric levels."""
        if isinstance(v, int):
            return logging.getLevelName(v)
        level = str(v).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("servers")
    @classmethod
    def validate_unique_identifiers(cls, v: list[ServerOptions]) -> list[ServerOptions]:
        seen: set[str] = set()
        for opts in v:
            if opts.identifier in seen:
                raise ValueError(f"Duplicate server identifier: {opts.identifier}")
            seen.add(opts.identifier)
        return v

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        **overrides,
    ) -> "ManagerConfig":
        """
        Build a config from environment variables.

        A ``.env`` file is loaded first when present; without ``env_file``
        it is searched for upward from the current working directory.
        Recognised variables: RCE_REFRESH_TOKEN, RCE_SAVE_AUTH, RCE_AUTH_FILE,
        RCE_LOG_LEVEL and RCE_LOG_FILE. Keyword overrides win over the environment.
        """
        if not load_dotenv(env_file or find_dotenv(usecwd=True)):
            logger.debug("No .env file loaded; using process environment only")

        values: dict = {}
        if token := os.getenv("RCE_REFRESH_TOKEN"):
            values["refresh_token"] = token
        if save_auth := os.getenv("RCE_SAVE_AUTH"):
            values["save_auth"] = save_auth.strip().lower() in _TRUE_VALUES
        if auth_file := os.getenv("RCE_AUTH_FILE"):
            values["auth_file"] = Path(auth_file)
        if log_level := os.getenv("RCE_LOG_LEVEL"):
            values["log_level"] = log_level
        if log_file := os.getenv("RCE_LOG_FILE"):
            values["log_file"] = Path(log_file)

        values.update(overrides)
        return cls(**values)


def setup_logging(level: Union[str, int] = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure the ``rce-manager`` logger.

    Adds a stream handler once, and a file handler for ``log_file`` if one is
    given and not already attached.

    Returns:
        The configured ``rce-manager`` logger
    """
    root = logging.getLogger("rce-manager")
    root.setLevel(level if isinstance(level, int) else str(level).upper())

    formatter = logging.Formatter(LOG_FORMAT)
    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        root.addHandler(stream)

    if log_file is not None:
        target = str(Path(log_file).resolve())
        attached = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == target
            for h in root.handlers
        )
        if not attached:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    return root


__all__ = [
    "ManagerConfig",
    "ServerOptions",
    "setup_logging",
]
