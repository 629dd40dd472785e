"""Configuration management for logscout."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from logscout.errors import ApiKeyNotConfiguredError
from logscout.tools.approval import ApprovalPolicy


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="LOGSCOUT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # API Configuration
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LOGSCOUT_API_KEY", "OPENAI_API_KEY"),
        description="API key for the LLM provider",
    )
    provider: Literal["openai", "azure"] = Field(default="openai", description="LLM provider")
    model: str = Field(default="o4-mini", description="Model name")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    azure_api_version: str = Field(default="2025-03-01-preview", description="Azure OpenAI API version")
    organization: str | None = Field(default=None, description="OpenAI organization id")
    project: str | None = Field(default=None, description="OpenAI project id")
    request_timeout_seconds: float = Field(default=600.0, description="HTTP timeout for model requests")

    # Agent Configuration
    instructions: str = Field(default="", description="Extra instructions appended to the system prompt")
    approval_policy: ApprovalPolicy = Field(default=ApprovalPolicy.SUGGEST, description="Command approval policy")
    disable_response_storage: bool = Field(default=False, description="Keep the transcript locally (store=false)")
    max_retries: int = Field(default=5, ge=1, description="Attempt ceiling for upstream requests")
    rate_limit_retry_wait_ms: int = Field(
        default=500,
        ge=0,
        validation_alias=AliasChoices("LOGSCOUT_RATE_LIMIT_RETRY_WAIT_MS", "OPENAI_RATE_LIMIT_RETRY_WAIT_MS"),
        description="Base wait for exponential backoff",
    )
    stream_idle_timeout_seconds: float = Field(default=30.0, gt=0, description="Watchdog window for stalled streams")
    approval_timeout_seconds: float = Field(default=300.0, gt=0, description="How long to wait for a human decision")
    exec_timeout_seconds: float = Field(default=30.0, gt=0, description="Default shell command timeout")

    # System Configuration
    workspace: Path | None = Field(default=None, description="Working directory for shell tools")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")

    @property
    def resolved_api_key(self) -> str:
        if not self.api_key:
            raise ApiKeyNotConfiguredError("set LOGSCOUT_API_KEY or OPENAI_API_KEY")
        return self.api_key

    def resolve_workspace(self) -> Path:
        return (self.workspace or Path.cwd()).expanduser().resolve()


def get_settings(workspace: Path | None = None) -> Settings:
    """Get application settings.

    Args:
        workspace: Optional workspace path override

    Returns:
        Settings instance
    """
    settings = Settings()
    if workspace is not None:
        settings = settings.model_copy(update={"workspace": workspace})
    return settings
