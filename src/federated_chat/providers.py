"""Resolve a model client for a provider/model pair."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from openai import AsyncOpenAI

from .errors import ProviderError
from .settings import Settings

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    OPENAI = "openai"
    PROXY = "proxy"
    LOCAL = "local"


class StreamRequestType(str, Enum):
    CHAT = "chat"
    CREATE = "create"
    ERROR_FIX = "error-fix"
    SUGGESTIONS = "suggestions"
    SUMMARY = "summary"


@dataclass
class ModelClient:
    """An API client bound to one model and its per-request headers."""

    client: AsyncOpenAI
    model: str
    headers: Dict[str, str] = field(default_factory=dict)


def resolve_model_client(
    provider: str, model: str, request_type: str, settings: Optional[Settings] = None
) -> ModelClient:
    """Build the client for ``provider``.

    Raises:
        ProviderError: Unknown provider or missing credentials.
    """
    settings = settings or Settings()
    try:
        provider = LLMProvider(provider)
    except ValueError:
        raise ProviderError(f"Unsupported provider: {provider}") from None

    if provider is LLMProvider.OPENAI:
        if not settings.openai_api_key:
            raise ProviderError("OPENAI_API_KEY is not set")
        return ModelClient(AsyncOpenAI(api_key=settings.openai_api_key), model)

    if provider is LLMProvider.PROXY:
        if not settings.proxy_url:
            raise ProviderError("FEDCHAT_PROXY_URL is not set")
        if not settings.proxy_token:
            raise ProviderError("No auth tokens found")
        headers = {"X-Request-Type": StreamRequestType(request_type).value}
        client = AsyncOpenAI(api_key=settings.proxy_token, base_url=settings.proxy_url)
        return ModelClient(client, model, headers)

    # LLMProvider.LOCAL
    logger.debug(f"Using local model endpoint {settings.local_url}")
    return ModelClient(AsyncOpenAI(api_key="No key", base_url=settings.local_url), model)
