"""
Environment configuration for the billing core.
Values come from the process environment (and .env via python-dotenv).
Business knobs such as the late fee live in the settings table instead.
"""

import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = os.path.join(os.path.dirname(__file__), "..", "..", "data")
DEFAULT_DATABASE_FILE = os.path.join(DATA_DIR, "db", "billing.sqlite")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str | None = None
    app_env: str = "development"
    log_level: str = "INFO"
    audit_log_dir: str = "logs"

    # Concurrency: retries for lock conflicts on a single bill
    lock_retries: int = 3
    lock_retry_backoff: float = 0.05
    sqlite_busy_timeout: float = 30.0
    document_number_attempts: int = 20

    def resolved_database_url(self) -> str:
        """DATABASE_URL if set, otherwise the bundled SQLite file."""
        if self.database_url:
            return self.database_url
        os.makedirs(os.path.dirname(DEFAULT_DATABASE_FILE), exist_ok=True)
        return f"sqlite:///{DEFAULT_DATABASE_FILE}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
