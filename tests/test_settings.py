from __future__ import annotations

from pathlib import Path

import pytest

from homepost.errors import ConfigError
from homepost.settings import load_settings


def test_missing_elevenlabs_key_is_fatal():
    with pytest.raises(ConfigError):
        load_settings({})


def test_defaults():
    s = load_settings({"ELEVENLABS_API_KEY": "k"})
    assert s.port == 3000
    assert s.http_port == 3001
    assert s.retain_audio_hours == 24
    assert s.alert_phrases == ("help", "emergency", "fire")
    assert s.web_auth_required is False
    assert s.openai_api_key is None
    assert s.audio_dir == Path("data") / "audio"
    assert s.db_path == str(Path("data") / "homepost.db")


def test_overrides():
    s = load_settings(
        {
            "ELEVENLABS_API_KEY": "k",
            "PORT": "4000",
            "LOG_LEVEL": "WARN",
            "DATA_DIR": "/var/lib/homepost",
            "ALERT_PHRASES": " Help , call  the police,help,",
            "WEB_AUTH_REQUIRED": "true",
            "OPENAI_API_KEY": "sk-test",
        }
    )
    assert s.port == 4000
    assert s.http_port == 4001
    assert s.log_level == "warn"
    assert s.audio_dir == Path("/var/lib/homepost/audio")
    assert s.alert_phrases == ("Help", "call the police", "help")
    assert s.web_auth_required is True
    assert s.openai_api_key == "sk-test"


def test_unknown_log_level_falls_back_to_info():
    assert load_settings({"ELEVENLABS_API_KEY": "k", "LOG_LEVEL": "chatty"}).log_level == "info"


@pytest.mark.parametrize(
    "env",
    [
        {"PORT": "abc"},
        {"PORT": "70000"},
        {"PORT": "3000", "HTTP_PORT": "3000"},
        {"RETAIN_AUDIO_HOURS": "0"},
        {"CLEANUP_INTERVAL_MINUTES": "-5"},
    ],
)
def test_invalid_numbers_are_fatal(env):
    with pytest.raises(ConfigError):
        load_settings({"ELEVENLABS_API_KEY": "k", **env})
