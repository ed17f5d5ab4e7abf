"""Tests for settings loading."""

import pytest

from seshat.config import Settings
from seshat.shared.errors import ConfigurationError
from seshat.shared.utils.secrets import SecretManagerClient

ENV_VARS = [
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "GOOGLE_AI_KEY",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSIONS",
    "CHUNK_SIZE",
    "CHUNK_OVERLAP",
    "EMBEDDING_BATCH_SIZE",
    "EMBEDDING_RPM",
    "STORE_BATCH_SIZE",
    "MIGRATION_BATCH_SIZE",
    "CHECKPOINT_FILE",
    "REQUEST_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.from_env(SecretManagerClient())
    assert settings.supabase_url is None
    assert settings.embedding_model == "gemini-embedding-001"
    assert settings.embedding_dimensions == 768
    assert settings.chunk_size == 450
    assert settings.chunk_overlap == 68
    assert settings.embedding_batch_size == 10
    assert settings.embedding_rpm == 100
    assert settings.store_batch_size == 50
    assert settings.migration_batch_size == 50
    assert settings.checkpoint_file == ".migration_checkpoint.json"
    assert settings.request_timeout == 30.0


def test_from_env(clean_env):
    clean_env.setenv("SUPABASE_URL", "https://abc.supabase.co")
    clean_env.setenv("SUPABASE_ANON_KEY", "anon")
    clean_env.setenv("GOOGLE_AI_KEY", "gkey")
    clean_env.setenv("CHUNK_SIZE", "300")
    clean_env.setenv("REQUEST_TIMEOUT", "12.5")

    settings = Settings.from_env(SecretManagerClient())
    assert settings.require_supabase() == ("https://abc.supabase.co", "anon")
    assert settings.require_google_ai_key() == "gkey"
    assert settings.chunk_size == 300
    assert settings.request_timeout == 12.5


def test_invalid_number(clean_env):
    clean_env.setenv("EMBEDDING_RPM", "fast")
    with pytest.raises(ConfigurationError, match="EMBEDDING_RPM must be an integer"):
        Settings.from_env(SecretManagerClient())


def test_missing_credentials():
    settings = Settings()
    with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
        settings.require_supabase()
    with pytest.raises(ConfigurationError, match="GOOGLE_AI_KEY"):
        settings.require_google_ai_key()
