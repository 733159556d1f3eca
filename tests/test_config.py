import json
import logging

import pytest
import yaml
from pydantic import ValidationError

from core.config import AppSettings, SettingsStore, UserSettings, load_user_settings
from core.errors import SettingsError
from core.logging import JsonFormatter


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Fixture to mock environment variables."""
    monkeypatch.setenv("MAX_CONCURRENCY", "5")
    monkeypatch.setenv("CACHE_TTL_DAYS", "7")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    return monkeypatch


def test_app_settings_from_env(mock_env_vars):
    settings = AppSettings()
    assert settings.MAX_CONCURRENCY == 5
    assert settings.CACHE_TTL_DAYS == 7
    assert settings.LOG_LEVEL == "DEBUG"
    assert settings.PROVIDER_TIMEOUT_SECONDS == 30.0


def test_app_settings_rejects_zero_concurrency(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENCY", "0")
    with pytest.raises(ValidationError):
        AppSettings()


def test_user_settings_defaults():
    settings = UserSettings()
    assert settings.providers.gemini.enabled is True
    assert settings.providers.gemini.model == "gemini-3-flash-preview"
    assert settings.providers.deepseek.base_url == "https://api.deepseek.com"
    assert settings.providers.newapi.is_fallback is False
    assert settings.model_routing.speech_tts == "doubao"
    assert settings.model_routing.preferred_for("audio_understanding") == "qwen-audio"
    assert settings.model_routing.preferred_for("keywords") is None


def test_partial_file_merges_over_defaults(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text(yaml.safe_dump({
        "providers": {"deepseek": {"enabled": True, "api_key": "sk-1"}},
        "model_routing": {"translation": "deepseek"},
    }))

    settings = load_user_settings(path)

    assert settings.providers.deepseek.api_key == "sk-1"
    assert settings.providers.deepseek.model == "deepseek-chat"
    assert settings.providers.gemini.enabled is True
    assert settings.model_routing.translation == "deepseek"
    assert settings.model_routing.explanation == "gemini"


def test_invalid_file_raises_settings_error(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text("providers: {deepseek: {enabled: [not, a, bool]}}")
    with pytest.raises(SettingsError):
        load_user_settings(path)


def test_store_falls_back_to_defaults_on_bad_file(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text(":\n  - : [unbalanced")

    store = SettingsStore(path)

    assert store.current == UserSettings()


def test_store_save_persists_and_notifies(tmp_path):
    path = tmp_path / "nested" / "settings.yml"
    store = SettingsStore(path)
    seen = []
    unsubscribe = store.subscribe(seen.append)

    updated = UserSettings()
    updated.providers.newapi.enabled = True
    updated.providers.newapi.is_fallback = True
    store.save(updated)

    assert seen == [updated]
    assert SettingsStore(path).current.providers.newapi.is_fallback is True

    unsubscribe()
    store.save(UserSettings())
    assert len(seen) == 1


def test_store_reload_notifies(tmp_path):
    path = tmp_path / "settings.yml"
    store = SettingsStore(path)
    seen = []
    store.subscribe(seen.append)

    path.write_text(yaml.safe_dump({"providers": {"qwen_audio": {"enabled": True, "api_key": "k"}}}))
    store.reload()

    assert seen[-1].providers.qwen_audio.api_key == "k"


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord({
        "name": "echospeak.test",
        "levelname": "INFO",
        "msg": "cached %s",
        "args": ("definition",),
        "provider": "gemini",
    })

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "cached definition"
    assert payload["provider"] == "gemini"
    assert payload["level"] == "INFO"


def test_gemini_key_prefers_specific_variable(monkeypatch):
    import core.env

    monkeypatch.setenv("API_KEY", "generic")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    assert core.env.gemini_api_key() == "generic"

    monkeypatch.setenv("GEMINI_API_KEY", "specific")
    assert core.env.gemini_api_key() == "specific"


def test_setup_logging_replaces_handlers_and_writes_json(tmp_path, monkeypatch):
    import core.logging

    monkeypatch.setattr(core.logging, "LOG_DIR", tmp_path)
    monkeypatch.setattr(core.logging, "LOG_FILE", tmp_path / "echospeak.log")
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        core.logging.setup_logging("debug")
        core.logging.setup_logging("info")
        assert len(root.handlers) == 2
        assert root.level == logging.INFO

        logging.getLogger("echospeak.test").info("hello", extra={"provider": "gemini"})
        for handler in root.handlers:
            handler.flush()
        line = (tmp_path / "echospeak.log").read_text(encoding="utf-8").splitlines()[-1]
        assert json.loads(line)["provider"] == "gemini"
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
