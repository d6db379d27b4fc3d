"""Unit tests for application settings."""

import pytest

from reconciler.infrastructure.settings import APP_NAME, Settings


@pytest.fixture
def env(monkeypatch):
    for name in ("RC_APP_NAME", "RC_LOG_LEVEL", "RC_SAVE_REPORT", "RC_REPORT_DIR", "RC_DB_TYPE", "RC_DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    """Test suite for Settings."""

    def test_defaults(self, env):
        """Test settings without any RC_* variables."""
        settings = Settings()

        assert settings.app_name == APP_NAME
        assert settings.log_level == "INFO"
        assert settings.save_report is True
        assert settings.report_dir == "reports"
        assert settings.db_config.db_type == "duckdb"
        assert settings.get_db_path() == ":memory:"

    def test_environment_overrides(self, env, tmp_path):
        """Test settings read from the environment."""
        env.setenv("RC_SAVE_REPORT", "false")
        env.setenv("RC_REPORT_DIR", str(tmp_path))
        env.setenv("RC_DB_PATH", str(tmp_path / "store.duckdb"))

        settings = Settings()

        assert settings.save_report is False
        assert settings.report_dir == str(tmp_path)
        assert settings.get_db_path() == str(tmp_path / "store.duckdb")

    def test_memory_store_has_no_path(self, env):
        """Test that get_db_path is only valid for DuckDB."""
        env.setenv("RC_DB_TYPE", "memory")
        with pytest.raises(ValueError):
            Settings().get_db_path()

    def test_reconciliation_config(self, env):
        """Test that tuning parameters come from the config manager."""
        env.setenv("RC_MAX_CASE_DURATION_MINUTES", "720")
        assert Settings().reconciliation_config.max_case_duration_minutes == 720
