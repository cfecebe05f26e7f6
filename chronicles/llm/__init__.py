"""LLM provider adapters.

Every adapter implements BaseProvider:

    get_provider_info()                         -> ProviderInfo
    validate_api_key(key)                       -> bool, never raises
    generate_response(context, player_action)   -> StructuredTurnResponse, falls back
    generate_story_recap(context, prompt)       -> str, falls back unless fallback=False
    generate_text(prompt, max_output_tokens=, temperature=) -> str, raises LLMError

Two vendors are provided:

    GeminiProvider  — Google generateContent REST API
    OpenAIProvider  — OpenAI (or compatible) chat-completions API

Adding a vendor means subclassing BaseProvider and registering it in
_PROVIDERS below.
"""

from __future__ import annotations

from .base import (  # noqa: F401
    RECAP_APOLOGY,
    BaseProvider,
    LLMError,
    ModelInfo,
    ProviderConfig,
    ProviderInfo,
    ProviderType,
    clean_recap_text,
    fallback_response,
    parse_turn_text,
    strip_code_fence,
)
from .gemini import GeminiProvider
from .openai import OpenAIProvider

_PROVIDERS: dict[ProviderType, type[BaseProvider]] = {
    ProviderType.GEMINI: GeminiProvider,
    ProviderType.OPENAI: OpenAIProvider,
}


def is_valid_provider_type(value: str) -> bool:
    return value in {p.value for p in ProviderType}


def create_provider(
    provider: ProviderType | str, config: ProviderConfig, timeout: float = 60.0
) -> BaseProvider:
    """Instantiate the adapter for a provider id.

    Raises ValueError for an unknown provider id.
    """
    try:
        provider_type = ProviderType(provider)
    except ValueError:
        raise ValueError(f"Unsupported provider type: {provider}") from None
    return _PROVIDERS[provider_type](config, timeout=timeout)


def get_provider_info(provider: ProviderType | str) -> ProviderInfo:
    try:
        provider_type = ProviderType(provider)
    except ValueError:
        raise ValueError(f"Unsupported provider type: {provider}") from None
    return _PROVIDERS[provider_type].get_provider_info()


def all_providers() -> list[ProviderInfo]:
    return [cls.get_provider_info() for cls in _PROVIDERS.values()]
