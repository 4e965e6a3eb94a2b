"""Tests for flowspine.core.settings.

Covers:
- EngineSettings defaults
- FLOWSPINE_* environment overrides
- Field validation
- get_settings caching
"""

import pytest
from pydantic import ValidationError

from flowspine.core.settings import EngineSettings, clear_settings_cache, get_settings


class TestEngineSettingsDefaults:
    def test_retry_defaults(self):
        s = EngineSettings(_env_file=None)
        assert s.max_attempts == 3
        assert s.backoff_base_seconds == 1.0
        assert s.backoff_max_seconds == 60.0

    def test_bookkeeping_defaults(self):
        s = EngineSettings(_env_file=None)
        assert s.max_history == 1000
        assert s.max_workers == 4

    def test_logging_defaults(self):
        s = EngineSettings(_env_file=None)
        assert s.log_level == "INFO"
        assert s.log_json is None


class TestEngineSettingsEnvOverride:
    def test_max_attempts_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWSPINE_MAX_ATTEMPTS", "5")
        assert EngineSettings(_env_file=None).max_attempts == 5

    def test_backoff_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWSPINE_BACKOFF_BASE_SECONDS", "0.5")
        monkeypatch.setenv("FLOWSPINE_BACKOFF_MAX_SECONDS", "10")
        s = EngineSettings(_env_file=None)
        assert s.backoff_base_seconds == 0.5
        assert s.backoff_max_seconds == 10.0

    def test_unprefixed_variables_ignored(self, monkeypatch):
        monkeypatch.setenv("MAX_ATTEMPTS", "9")
        assert EngineSettings(_env_file=None).max_attempts == 3

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("FLOWSPINE_MAX_HISTORY=50\n")
        assert EngineSettings(_env_file=env_file).max_history == 50


class TestEngineSettingsValidation:
    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            EngineSettings(_env_file=None, max_attempts=0)

    def test_backoff_max_below_base_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings(_env_file=None, backoff_base_seconds=5, backoff_max_seconds=1)


class TestGetSettings:
    def test_cached(self):
        assert get_settings() is get_settings()

    def test_cache_cleared(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("FLOWSPINE_MAX_ATTEMPTS", "7")
        clear_settings_cache()
        second = get_settings()
        assert second is not first
        assert second.max_attempts == 7
