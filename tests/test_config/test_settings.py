"""Tests for Settings."""

import pytest
from pydantic import ValidationError

from src.config.settings import Settings


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PERSISTENCE_STRATEGY", raising=False)
        settings = Settings(_env_file=None)

        assert settings.persistence_strategy == "local_disk"
        assert settings.max_concurrent_operations is None
        assert not settings.is_production

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PERSISTENCE_STRATEGY", "document_store")
        monkeypatch.setenv("MAX_CONCURRENT_OPERATIONS", "8")
        monkeypatch.setenv("ENVIRONMENT", "production")

        settings = Settings(_env_file=None)

        assert settings.persistence_strategy == "document_store"
        assert settings.max_concurrent_operations == 8
        assert settings.is_production

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("persistence_strategy", "ftp"),
            ("max_concurrent_operations", 0),
            ("max_retries", 11),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})
