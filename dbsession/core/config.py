"""
Application configuration using Pydantic Settings.

Configuration values can be set via environment variables or .env file.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionStoreConfig(BaseModel):
    """Immutable store configuration shared by every component."""

    model_config = ConfigDict(frozen=True)

    table_name: str = Field("session_data", min_length=1, max_length=128)
    # SQL expression evaluated by the database for "now"; None means the
    # store computes timestamps on the client
    current_timestamp_db_function: Optional[str] = None
    native_upsert: bool = False
    max_upsert_attempts: int = Field(4, ge=2)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "dbsession"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./data/sessions.db"

    # Session store
    session_table_name: str = "session_data"
    current_timestamp_db_function: Optional[str] = None
    native_upsert: bool = False
    max_upsert_attempts: int = 4

    # How often the background sweeper runs
    cleanup_interval_seconds: int = 300

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    def store_config(self) -> SessionStoreConfig:
        """Build the immutable store configuration from these settings."""
        return SessionStoreConfig(
            table_name=self.session_table_name,
            current_timestamp_db_function=self.current_timestamp_db_function or None,
            native_upsert=self.native_upsert,
            max_upsert_attempts=self.max_upsert_attempts,
        )


# Global settings instance
settings = Settings()
