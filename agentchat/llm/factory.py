"""
Completion-client factory with layered credential resolution.

Per-session overrides (api key, base URL, provider kind) win over the
process-wide defaults from ``LLMConfig``.  Nothing here keeps global state:
every agent asks for its own client and owns it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import httpx

from agentchat.config import LLMConfig
from agentchat.errors import ValidationError
from agentchat.llm.providers.base import CompletionClient
from agentchat.llm.providers.openai_compat import OpenAICompatClient
from agentchat.types import ProviderKind, SessionState

logger = logging.getLogger(__name__)

API_KEY_MISSING = (
    "API key is missing or invalid. Please provide a valid API key in the "
    "settings or environment variables."
)

# OpenAI-compatible gateways for providers that are not OpenAI themselves.
PROVIDER_BASE_URLS: dict[ProviderKind, str] = {
    ProviderKind.GOOGLE: "https://generativelanguage.googleapis.com/v1beta/openai",
    ProviderKind.ANTHROPIC: "https://api.anthropic.com/v1",
}


@dataclass(frozen=True)
class ResolvedCredentials:
    api_key: str
    base_url: str
    provider: ProviderKind


def resolve_credentials(state: SessionState, llm: LLMConfig) -> ResolvedCredentials:
    """
    Merge session overrides onto the configured defaults.

    Raises ``ValidationError`` when no usable api key is found in either
    layer.
    """
    provider = ProviderKind.parse(state.provider or "") or ProviderKind.BUILTIN

    default_key = os.environ.get(llm.api_key_env, "") if llm.api_key_env else ""
    api_key = (state.api_key or "").strip() or default_key.strip()
    if not api_key:
        raise ValidationError(API_KEY_MISSING)

    base_url = (state.base_url or "").strip()
    if not base_url:
        base_url = PROVIDER_BASE_URLS.get(provider, llm.api_base)

    return ResolvedCredentials(api_key=api_key, base_url=base_url, provider=provider)


def build_client(
    state: SessionState,
    llm: LLMConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CompletionClient:
    """Return a client bound to the session's effective credentials and model."""
    creds = resolve_credentials(state, llm)
    logger.debug(
        "Building %s client for session %s at %s",
        creds.provider.value,
        state.session_id,
        creds.base_url,
    )
    return OpenAICompatClient(
        url=creds.base_url,
        model=state.model,
        api_key=creds.api_key,
        timeout=float(llm.timeout_seconds),
        max_retries=llm.max_retries,
        transport=transport,
    )
