"""Unit tests for environment-driven settings."""

import pytest

from polychat.config.settings import load_settings, normalize_api_base

ENV_NAMES = [
    "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_API_KEY", "OPENAI_BASE_URL", "LMSTUDIO_BASE_URL",
    "LMSTUDIO_MODELS", "POLYCHAT_EXTRA_MODELS", "CHAT_STREAM_PROTOCOL", "PORT", "TOOL_TIMEOUT_SECONDS",
    "DEFAULT_MODEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("POLYCHAT_DB_PATH", str(tmp_path / "db" / "chat.db"))
    return monkeypatch


class TestLoadSettings:
    def test_defaults(self, clean_env, tmp_path) -> None:
        settings = load_settings()

        assert settings.openai_api_key is None
        assert settings.lmstudio_base_url == "http://localhost:1234/v1"
        assert settings.stream_protocol == "ui"
        assert settings.port == 3000
        assert (tmp_path / "db").is_dir()

    def test_values_are_stripped_and_parsed(self, clean_env) -> None:
        clean_env.setenv("OPENAI_API_KEY", '  "sk-abc"  ')
        clean_env.setenv("LMSTUDIO_MODELS", "qwen3-8b, mistral-7b ,")
        clean_env.setenv("CHAT_STREAM_PROTOCOL", "PLAIN")
        clean_env.setenv("PORT", "8080")

        settings = load_settings()

        assert settings.openai_api_key == "sk-abc"
        assert settings.lmstudio_models == ("qwen3-8b", "mistral-7b")
        assert settings.stream_protocol == "plain"
        assert settings.port == 8080

    def test_unsupported_protocol_falls_back(self, clean_env) -> None:
        clean_env.setenv("CHAT_STREAM_PROTOCOL", "websocket")
        assert load_settings().stream_protocol == "ui"

    def test_bad_float_uses_default(self, clean_env) -> None:
        clean_env.setenv("TOOL_TIMEOUT_SECONDS", "-3")
        assert load_settings().tool_timeout_seconds == 30.0


class TestNormalizeApiBase:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("http://localhost:1234", "http://localhost:1234/v1"),
            ("http://localhost:1234/v1/", "http://localhost:1234/v1"),
            ("http://host:1234/v1/chat/completions", "http://host:1234/v1"),
        ],
    )
    def test_normalizes(self, raw, expected) -> None:
        assert normalize_api_base(raw) == expected

    def test_missing_scheme(self) -> None:
        with pytest.raises(RuntimeError):
            normalize_api_base("localhost:1234")
