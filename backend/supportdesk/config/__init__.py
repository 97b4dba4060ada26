"""
Application configuration.
Settings are read from environment variables and an optional .env file.

Version: 1.0.0
"""
from functools import lru_cache
from typing import List, Union
import logging

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Core application settings.

    LLM completion settings live in ``config.llm_settings`` so the dialog
    functions can be configured independently of the web application.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===========================
    # Application
    # ===========================

    app_name: str = Field(default="Support Desk Backend")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)
    api_prefix: str = Field(default="/api/v1")
    api_workers: int = Field(default=4, ge=1)
    functions_prefix: str = Field(
        default="/functions/v1",
        description="Mount point of the dialog functions (handle-task-chat, intelligent-dialog-api)"
    )

    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])
    cors_allow_credentials: bool = Field(default=True)

    # ===========================
    # Database
    # ===========================

    database_url: str = Field(default="sqlite:///./data/supportdesk.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=10, ge=1)
    database_pool_overflow: int = Field(default=20, ge=0)
    database_pool_timeout: int = Field(default=30, ge=1)
    database_pool_recycle: int = Field(default=3600, ge=60)

    # ===========================
    # Authentication
    # ===========================

    secret_key: SecretStr = Field(default=SecretStr("change-me-in-production"))
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiration_hours: int = Field(default=24, ge=1)

    # ===========================
    # Storage (task attachments)
    # ===========================

    storage_root: str = Field(default="./data/storage")
    storage_bucket: str = Field(default="task-attachments")
    storage_public_base_url: str = Field(default="/storage")
    storage_cache_control: str = Field(default="3600")
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1024)

    # ===========================
    # Time accounting
    # ===========================

    duration_cache_enabled: bool = Field(
        default=True,
        description="Cache task durations in memory, invalidated by the change feed"
    )
    duration_cache_max_entries: int = Field(default=10000, ge=1)

    # ===========================
    # Telemetry / rate limiting
    # ===========================

    enable_telemetry: bool = Field(default=True)
    rate_limit_enabled: bool = Field(default=False)
    rate_limit_requests: int = Field(default=100, ge=1)
    rate_limit_period: int = Field(default=60, ge=1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        """Accept a comma separated string as well as a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "testing", "staging", "production"}
        value = v.lower()
        if value not in allowed:
            raise ValueError(f"environment must be one of {sorted(allowed)}")
        return value

    @property
    def database_is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def database_is_postgresql(self) -> bool:
        return self.database_url.startswith("postgresql")

    def get_secret_key(self) -> str:
        """Get the JWT signing key (use this instead of accessing the field directly)."""
        return self.secret_key.get_secret_value()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
