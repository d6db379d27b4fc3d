"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.
"""

import os
from typing import Optional

from reconciler.infrastructure.config_manager import (
    ConfigManager,
    DatabaseConfig,
    ReconciliationConfig,
    load_env_file,
)

# Application metadata
APP_NAME = "Clinical-Reconciler"
APP_VERSION = "0.1.0"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Environment Variables:
        - RC_APP_NAME: Display name
        - RC_LOG_LEVEL: Logging level (default INFO)
        - RC_SAVE_REPORT: Write the run report to RC_REPORT_DIR (default true)
        - RC_REPORT_DIR: Directory for run reports (default 'reports')
    """

    def __init__(self):
        load_env_file()

        self._db_config: Optional[DatabaseConfig] = None
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("RC_APP_NAME", APP_NAME)
        self.log_level = os.getenv("RC_LOG_LEVEL", "INFO")

        self.save_report = os.getenv("RC_SAVE_REPORT", "true").lower() == "true"
        self.report_dir = os.getenv("RC_REPORT_DIR", "reports")

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        if self._db_config is None:
            self._db_config = self.config_manager.get_database_config()
        return self._db_config

    @property
    def reconciliation_config(self) -> ReconciliationConfig:
        return self.config_manager.get_reconciliation_config()

    def get_db_path(self) -> str:
        """Database path for DuckDB, or ':memory:'."""
        if self.db_config.db_type == "duckdb":
            return self.db_config.db_path or ":memory:"
        raise ValueError(f"Database type '{self.db_config.db_type}' does not use db_path")


# Global settings instance
settings = Settings()
