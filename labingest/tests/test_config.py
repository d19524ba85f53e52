import logging
from pathlib import Path

import pytest

from labingest.config import DEFAULT_MAX_UPLOAD_BYTES, Settings, configure_logging, load_settings

ENV_VARS = [
    "LAB_DATA_DIR",
    "LAB_MAX_UPLOAD_BYTES",
    "LAB_ANALYSIS_PROVIDER",
    "LAB_ANALYSIS_MODEL",
    "LAB_ANALYSIS_API_KEY",
    "LAB_ANALYSIS_TIMEOUT_SECONDS",
    "LAB_WORKER_COUNT",
    "LAB_QUEUE_SIZE",
    "LAB_QUEUE_PUT_TIMEOUT_SECONDS",
    "LAB_LOG_LEVEL",
    "LAB_CORS_ALLOWED_ORIGINS",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = load_settings()

    assert settings.data_dir == Path("data")
    assert settings.max_upload_bytes == DEFAULT_MAX_UPLOAD_BYTES
    assert settings.analysis_provider == "openai"
    assert settings.analysis_api_key is None
    assert settings.resolved_model == "gpt-4.1-mini"
    assert settings.staging_dir == Path("data") / "staging"
    assert settings.experiments_dir == Path("data") / "experiments"
    assert "http://localhost:3000" in settings.cors_allowed_origins
    assert "http://127.0.0.1:3000" in settings.cors_allowed_origins


def test_environment_overrides(clean_env, tmp_path):
    clean_env.setenv("LAB_DATA_DIR", str(tmp_path))
    clean_env.setenv("LAB_ANALYSIS_PROVIDER", "Gemini")
    clean_env.setenv("GEMINI_API_KEY", "gem-key")
    clean_env.setenv("LAB_WORKER_COUNT", "4")
    clean_env.setenv("LAB_QUEUE_SIZE", "8")
    clean_env.setenv("LAB_CORS_ALLOWED_ORIGINS", "https://lab.example.org, ")

    settings = load_settings()

    assert settings.data_dir == tmp_path
    assert settings.analysis_provider == "gemini"
    assert settings.analysis_api_key == "gem-key"
    assert settings.worker_count == 4
    assert settings.queue_size == 8
    assert settings.cors_allowed_origins == ["https://lab.example.org"]


def test_explicit_key_wins_over_provider_key(clean_env):
    clean_env.setenv("OPENAI_API_KEY", "openai-key")
    clean_env.setenv("LAB_ANALYSIS_API_KEY", "explicit-key")

    assert load_settings().analysis_api_key == "explicit-key"


def test_chatgpt_alias_maps_to_openai():
    assert Settings(analysis_provider="chatgpt").analysis_provider == "openai"


def test_invalid_worker_count_rejected():
    with pytest.raises(ValueError):
        Settings(worker_count=0)


def test_configure_logging_installs_single_handler():
    root = logging.getLogger()
    configure_logging("DEBUG")
    configure_logging("WARNING")

    tagged = [handler for handler in root.handlers if getattr(handler, "_labingest", False)]
    assert len(tagged) == 1
    assert root.level == logging.WARNING
    root.removeHandler(tagged[0])
