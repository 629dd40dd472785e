"""OpenAI client construction."""

from __future__ import annotations

from openai import AsyncAzureOpenAI, AsyncOpenAI

from logscout import __version__
from logscout.config import Settings
from logscout.errors import ConfigurationError


def build_client(settings: Settings) -> AsyncOpenAI:
    """Build an async Responses API client configured for logscout.

    SDK-level retries are disabled; the agent loop owns the retry policy.
    """

    headers = {"User-Agent": f"logscout/{__version__}"}
    if settings.provider == "azure":
        if not settings.api_base:
            raise ConfigurationError("LOGSCOUT_API_BASE is required for the azure provider")
        return AsyncAzureOpenAI(
            api_key=settings.resolved_api_key,
            azure_endpoint=settings.api_base,
            api_version=settings.azure_api_version,
            timeout=settings.request_timeout_seconds,
            max_retries=0,
            default_headers=headers,
        )

    return AsyncOpenAI(
        api_key=settings.resolved_api_key,
        base_url=settings.api_base,
        organization=settings.organization,
        project=settings.project,
        timeout=settings.request_timeout_seconds,
        max_retries=0,
        default_headers=headers,
    )
