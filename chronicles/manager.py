"""Provider manager: resolves the active adapter from live settings.

The manager is built with a settings accessor rather than a static config, so
a provider, model or key change is picked up on the next call. The adapter is
cached and only rebuilt when the resolved provider config differs from the
cached one.

The cached adapter is unsynchronised state. The server builds one manager
per request; anything sharing a manager across OS threads must add a lock.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping

from pydantic import BaseModel, Field

from chronicles import llm
from chronicles.llm import BaseProvider, ProviderConfig, ProviderType
from chronicles.models import ContextDetail, GameContext, StructuredTurnResponse

logger = logging.getLogger(__name__)

CONTEXT_DETAILS: tuple[str, ...] = ("minimal", "standard", "rich")


class ConfigurationError(ValueError):
    """No usable provider configuration (missing key, unknown provider, bad value)."""


class LLMSettings(BaseModel):
    """Provider, credentials and generation parameters chosen by the player."""

    provider: ProviderType = ProviderType.GEMINI
    model: str = "gemini-1.5-flash"
    api_key: str = ""
    temperature: float = 0.8
    max_tokens: int = Field(default=1024, gt=0)
    history_length: int = Field(default=5, ge=1)
    context_detail: ContextDetail = "standard"
    base_url: str | None = None

    def with_provider(self, provider: ProviderType | str) -> LLMSettings:
        """Switch provider, resetting the model to that provider's default."""
        info = llm.get_provider_info(provider)
        return self.model_copy(update={"provider": info.id, "model": info.default_model})

    def is_configured(self) -> bool:
        return self.api_key.strip() != ""


class ProviderManager:
    """Single facade over whichever adapter the current settings select."""

    def __init__(
        self, get_settings: Callable[[], LLMSettings], timeout: float = 60.0
    ) -> None:
        self._get_settings = get_settings
        self._timeout = timeout
        self._provider: BaseProvider | None = None
        self._provider_type: ProviderType | None = None
        self._provider_config: ProviderConfig | None = None

    def ensure_provider(self) -> BaseProvider:
        """Return the adapter for the current settings, building it if needed.

        Raises ConfigurationError when no API key is resolvable.
        """
        settings = self._get_settings()
        if not settings.api_key:
            raise ConfigurationError(
                f"API key not configured for provider: {settings.provider.value}"
            )

        config = ProviderConfig(
            api_key=settings.api_key,
            model=settings.model or None,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            history_length=settings.history_length,
            context_detail=settings.context_detail,
            base_url=settings.base_url,
        )
        if (
            self._provider is None
            or self._provider_type != settings.provider
            or self._provider_config != config
        ):
            logger.debug("building %s adapter", settings.provider.value)
            self._provider = llm.create_provider(settings.provider, config, timeout=self._timeout)
            self._provider_type = settings.provider
            self._provider_config = config
        return self._provider

    async def generate_response(
        self, context: GameContext, player_action: str
    ) -> StructuredTurnResponse:
        return await self.ensure_provider().generate_response(context, player_action)

    async def generate_story_recap(
        self, context: GameContext, prompt: str, *, fallback: bool = True
    ) -> str:
        return await self.ensure_provider().generate_story_recap(
            context, prompt, fallback=fallback
        )

    async def generate_text(
        self,
        prompt: str,
        *,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        return await self.ensure_provider().generate_text(
            prompt, max_output_tokens=max_output_tokens, temperature=temperature
        )

    def current_provider_info(self) -> llm.ProviderInfo | None:
        if self._provider_type is None:
            return None
        return llm.get_provider_info(self._provider_type)


# ---------------------------------------------------------------------------
# Request-boundary resolution
# ---------------------------------------------------------------------------

def _env_key(provider: ProviderType, env: Mapping[str, str]) -> str:
    if provider == ProviderType.OPENAI:
        return env.get("OPENAI_API_KEY", "")
    return env.get("GEMINI_API_KEY", "")


def _number_header(headers: Mapping[str, str], name: str, cast: Callable):
    raw = headers.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from None


def settings_from_request(
    headers: Mapping[str, str], env: Mapping[str, str] | None = None
) -> LLMSettings:
    """Resolve LLM settings for one request.

    Client headers (x-llm-provider, x-llm-api-key, x-llm-model and the
    generation parameters) win over server environment defaults. Raises
    ConfigurationError for an unknown provider, a malformed parameter, or
    when no key is found anywhere.
    """
    env = os.environ if env is None else env

    provider_id = headers.get("x-llm-provider") or env.get("DEFAULT_LLM_PROVIDER") or "gemini"
    if not llm.is_valid_provider_type(provider_id):
        raise ConfigurationError(f"Unknown LLM provider: {provider_id}")
    provider = ProviderType(provider_id)

    api_key = headers.get("x-llm-api-key") or _env_key(provider, env)
    if not api_key:
        raise ConfigurationError(f"API key not found for provider: {provider.value}")

    fields: dict = {"provider": provider, "api_key": api_key}
    model = headers.get("x-llm-model") or env.get("DEFAULT_LLM_MODEL")
    fields["model"] = model or llm.get_provider_info(provider).default_model

    temperature = _number_header(headers, "x-llm-temperature", float)
    if temperature is not None:
        fields["temperature"] = temperature
    max_tokens = _number_header(headers, "x-llm-max-tokens", int)
    if max_tokens is not None:
        if max_tokens <= 0:
            raise ConfigurationError("x-llm-max-tokens must be positive")
        fields["max_tokens"] = max_tokens
    history_length = _number_header(headers, "x-llm-history-length", int)
    if history_length is not None:
        if history_length < 1:
            raise ConfigurationError("x-llm-history-length must be at least 1")
        fields["history_length"] = history_length
    detail = headers.get("x-llm-context-detail")
    if detail:
        if detail not in CONTEXT_DETAILS:
            raise ConfigurationError(f"Unknown context detail: {detail}")
        fields["context_detail"] = detail
    if provider == ProviderType.OPENAI and env.get("OPENAI_BASE_URL"):
        fields["base_url"] = env["OPENAI_BASE_URL"]

    return LLMSettings(**fields)


def headers_for_settings(settings: LLMSettings) -> dict[str, str]:
    """Client side: the x-llm-* headers that carry the player's settings."""
    headers = {"Content-Type": "application/json"}
    if settings.provider and settings.api_key:
        headers["x-llm-provider"] = settings.provider.value
        headers["x-llm-api-key"] = settings.api_key
        if settings.model:
            headers["x-llm-model"] = settings.model
    headers["x-llm-temperature"] = str(settings.temperature)
    headers["x-llm-max-tokens"] = str(settings.max_tokens)
    headers["x-llm-history-length"] = str(settings.history_length)
    headers["x-llm-context-detail"] = settings.context_detail
    return headers
