"""
Environment-backed settings for the relay.

Values are read once from the process environment (and a local ``.env`` file if
present). The relay path depends on three secrets; ``validate_relay`` is called at
startup so a missing secret disables the route instead of failing per request.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

import dotenv
from pydantic import BaseModel, Field, field_validator

from voice_relay.config.constants import (
    AUTH_MODE_PUBLIC,
    AUTH_MODE_REQUIRED,
    DEFAULT_INSTRUCTIONS,
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REALTIME_URL,
    DEFAULT_VOICE,
    LOGGER_NAME,
    MAX_FRAME_SIZE,
    RATE_LIMIT_MAX_FRAMES,
    RATE_LIMIT_WINDOW_SECONDS,
    ROOM_HISTORY_LIMIT,
)
from voice_relay.errors import ConfigError

logger = logging.getLogger(LOGGER_NAME)


class RelaySettings(BaseModel):
    """Settings for the relay service."""

    openai_api_key: Optional[str] = None
    realtime_model: str = DEFAULT_REALTIME_MODEL
    realtime_url: str = DEFAULT_REALTIME_URL
    identity_provider_url: Optional[str] = None
    identity_provider_key: Optional[str] = None
    auth_mode: str = AUTH_MODE_REQUIRED
    instructions: str = DEFAULT_INSTRUCTIONS
    voice: str = DEFAULT_VOICE
    max_frame_size: int = Field(MAX_FRAME_SIZE, gt=0)
    rate_limit_max_frames: int = Field(RATE_LIMIT_MAX_FRAMES, gt=0)
    rate_limit_window_seconds: float = Field(RATE_LIMIT_WINDOW_SECONDS, gt=0)
    room_history_limit: int = Field(ROOM_HISTORY_LIMIT, ge=0)
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("auth_mode")
    def validate_auth_mode(cls, v):
        """Only the two documented trust policies are accepted."""
        v = v.strip().lower()
        if v not in (AUTH_MODE_REQUIRED, AUTH_MODE_PUBLIC):
            raise ValueError(
                f"auth_mode must be '{AUTH_MODE_REQUIRED}' or '{AUTH_MODE_PUBLIC}', got '{v}'"
            )
        return v

    @property
    def public_access(self) -> bool:
        return self.auth_mode == AUTH_MODE_PUBLIC

    def missing_relay_settings(self) -> List[str]:
        """Names of the environment variables the relay path still needs."""
        missing = []
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.identity_provider_url:
            missing.append("IDENTITY_PROVIDER_URL")
        if not self.identity_provider_key:
            missing.append("IDENTITY_PROVIDER_KEY")
        return missing

    def validate_relay(self) -> None:
        """
        Check that every secret the relay needs is present.

        Raises:
            ConfigError: If any required secret is missing
        """
        missing = self.missing_relay_settings()
        if missing:
            raise ConfigError(
                f"Service not configured: missing {', '.join(missing)}"
            )


def load_settings(env_file: Optional[Path] = None) -> RelaySettings:
    """
    Build settings from the environment.

    Args:
        env_file: Optional path to a dotenv file; defaults to ./.env when it exists

    Returns:
        RelaySettings: The parsed settings

    Raises:
        ConfigError: If a value cannot be parsed
    """
    env_path = env_file or Path(".") / ".env"
    if env_path.exists():
        dotenv.load_dotenv(env_path)

    values = {
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "realtime_model": os.getenv("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
        "realtime_url": os.getenv("OPENAI_REALTIME_URL", DEFAULT_REALTIME_URL),
        "identity_provider_url": os.getenv("IDENTITY_PROVIDER_URL"),
        "identity_provider_key": os.getenv("IDENTITY_PROVIDER_KEY"),
        "auth_mode": os.getenv("RELAY_AUTH_MODE", AUTH_MODE_REQUIRED),
        "instructions": os.getenv("RELAY_INSTRUCTIONS", DEFAULT_INSTRUCTIONS),
        "voice": os.getenv("RELAY_VOICE", DEFAULT_VOICE),
        "max_frame_size": os.getenv("MAX_FRAME_SIZE", MAX_FRAME_SIZE),
        "rate_limit_max_frames": os.getenv("RATE_LIMIT_MAX_FRAMES", RATE_LIMIT_MAX_FRAMES),
        "rate_limit_window_seconds": os.getenv(
            "RATE_LIMIT_WINDOW_SECONDS", RATE_LIMIT_WINDOW_SECONDS
        ),
        "room_history_limit": os.getenv("ROOM_HISTORY_LIMIT", ROOM_HISTORY_LIMIT),
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": os.getenv("PORT", "8000"),
    }
    try:
        settings = RelaySettings(**values)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        f"Settings loaded (model={settings.realtime_model}, auth_mode={settings.auth_mode})"
    )
    return settings
