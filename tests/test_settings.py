import os
from unittest.mock import patch

import pytest

from voice_relay.config.settings import RelaySettings, load_settings
from voice_relay.errors import ConfigError

FULL_ENV = {
    "OPENAI_API_KEY": "sk-test",
    "IDENTITY_PROVIDER_URL": "https://identity.example.com",
    "IDENTITY_PROVIDER_KEY": "public-key",
}


@pytest.fixture
def no_env_file(tmp_path):
    return tmp_path / "missing.env"


def test_defaults(no_env_file):
    with patch.dict(os.environ, {}, clear=True):
        settings = load_settings(no_env_file)

    assert settings.openai_api_key is None
    assert settings.realtime_model == "gpt-4o-realtime-preview-2024-10-01"
    assert settings.auth_mode == "required"
    assert settings.public_access is False
    assert settings.max_frame_size == 10240
    assert settings.rate_limit_max_frames == 10
    assert settings.rate_limit_window_seconds == 60
    assert settings.port == 8000


def test_environment_overrides(no_env_file):
    env = dict(FULL_ENV, RELAY_AUTH_MODE="Public", RATE_LIMIT_MAX_FRAMES="25", PORT="9000")
    with patch.dict(os.environ, env, clear=True):
        settings = load_settings(no_env_file)

    assert settings.openai_api_key == "sk-test"
    assert settings.public_access is True
    assert settings.rate_limit_max_frames == 25
    assert settings.port == 9000


def test_env_file_is_loaded(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("OPENAI_API_KEY=sk-from-file\nRELAY_VOICE=verse\n")

    with patch.dict(os.environ, {}, clear=True):
        settings = load_settings(env_file)

    assert settings.openai_api_key == "sk-from-file"
    assert settings.voice == "verse"


def test_invalid_auth_mode_is_a_config_error(no_env_file):
    with patch.dict(os.environ, {"RELAY_AUTH_MODE": "open"}, clear=True):
        with pytest.raises(ConfigError, match="auth_mode"):
            load_settings(no_env_file)


def test_invalid_number_is_a_config_error(no_env_file):
    with patch.dict(os.environ, {"MAX_FRAME_SIZE": "ten"}, clear=True):
        with pytest.raises(ConfigError):
            load_settings(no_env_file)


def test_validate_relay_lists_missing_secrets():
    settings = RelaySettings(openai_api_key="sk-test")

    assert settings.missing_relay_settings() == ["IDENTITY_PROVIDER_URL", "IDENTITY_PROVIDER_KEY"]
    with pytest.raises(ConfigError) as exc_info:
        settings.validate_relay()

    assert exc_info.value.status_code == 500
    assert "IDENTITY_PROVIDER_URL" in exc_info.value.message


def test_validate_relay_passes_when_complete():
    settings = RelaySettings(
        openai_api_key="sk-test",
        identity_provider_url="https://identity.example.com",
        identity_provider_key="public-key",
    )

    settings.validate_relay()
    assert settings.missing_relay_settings() == []
