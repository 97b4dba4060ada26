"""
Completion API configuration.
Model selection, sampling parameters and resilience settings for the
dialog functions (handle-task-chat, intelligent-dialog-api).

Version: 1.0.0
"""
from typing import Any, Dict, Optional, Union
import logging
import os

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class LLMSettings(BaseSettings):
    """
    Settings for the outbound completion API.

    The API key supports two forms:
    - Direct value: "sk-abc123" (development only)
    - Environment variable reference: "env://OPENAI_API_KEY"
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===========================
    # Endpoint
    # ===========================

    llm_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("llm_api_key", "openai_api_key"),
        description="Completion API key (supports env:// prefix)"
    )

    llm_api_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the OpenAI-compatible completion API"
    )

    llm_timeout: float = Field(
        default=60.0,
        ge=1.0,
        le=600.0,
        description="Total request timeout in seconds"
    )

    # ===========================
    # Task chat (handle-task-chat)
    # ===========================

    task_chat_model: str = Field(default="gpt-4.1")
    task_chat_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    task_chat_max_tokens: int = Field(default=1500, ge=1, le=32000)

    # ===========================
    # Dialog authoring (intelligent-dialog-api)
    # ===========================

    dialog_model: str = Field(default="gpt-4.1-2025-04-14")
    dialog_temperature: float = Field(default=1.0, ge=0.0, le=2.0)

    # ===========================
    # Resilience
    # ===========================

    llm_rate_limit_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts on HTTP 429 before the rate limit error is surfaced"
    )

    llm_retry_wait_min: float = Field(default=1.0, ge=0.0)
    llm_retry_wait_max: float = Field(default=10.0, ge=0.0)

    llm_circuit_breaker_fail_max: int = Field(default=5, ge=1)
    llm_circuit_breaker_timeout: int = Field(default=60, ge=1)

    @field_validator("llm_api_key", mode="before")
    @classmethod
    def load_api_key_from_source(cls, v: Optional[Union[str, SecretStr]]) -> Optional[SecretStr]:
        """
        Load the API key from a direct value or an env:// reference.

        Args:
            v: API key value or reference

        Returns:
            SecretStr with loaded value or None
        """
        if v is None:
            return None

        if isinstance(v, SecretStr):
            return v

        if not isinstance(v, str):
            raise ValueError(f"API key must be string or SecretStr, got {type(v)}")

        if not v.strip():
            return None

        if v.startswith("env://"):
            env_var = v.replace("env://", "")
            env_value = os.getenv(env_var)

            if not env_value:
                logger.warning(f"Environment variable not set: {env_var}")
                return None

            logger.info(f"Loaded API key from environment variable: {env_var}")
            return SecretStr(env_value)

        return SecretStr(v)

    def get_api_key(self) -> Optional[str]:
        """
        Get the API key value (use this instead of accessing the field directly).

        Returns:
            API key string or None if not set
        """
        if self.llm_api_key:
            return self.llm_api_key.get_secret_value()
        return None

    def get_client_config(self) -> Dict[str, Any]:
        """Non-secret view of the client configuration, for logging."""
        return {
            "base_url": self.llm_api_base_url,
            "timeout": self.llm_timeout,
            "task_chat_model": self.task_chat_model,
            "dialog_model": self.dialog_model,
            "rate_limit_retries": self.llm_rate_limit_retries,
            "api_key_configured": self.llm_api_key is not None
        }


llm_settings = LLMSettings()

__all__ = ["LLMSettings", "llm_settings"]
