"""OpenAI adapter (chat-completions API, or any compatible endpoint).

    POST {base}/chat/completions
      {"model", "messages": [{"role", "content"}], "temperature", "max_tokens",
       "response_format": {"type": "json_object"}}   ← structured turns only
    Response: {"choices": [{"message": {"content": "..."}}]}
"""

from __future__ import annotations

import logging

import httpx

from chronicles.models import GameContext
from chronicles.prompts import (
    RECAP_SYSTEM_PROMPT,
    build_recap_prompt,
    build_turn_prompt,
    system_prompt,
)

from .base import BaseProvider, LLMError, ModelInfo, ProviderInfo, ProviderType

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"

_MODELS: dict[str, ModelInfo] = {
    "gpt-4o-mini": ModelInfo(
        name="GPT-4o Mini",
        description="Fast, affordable, good storytelling",
        cost="low",
    ),
    "gpt-4o": ModelInfo(
        name="GPT-4o",
        description="Advanced reasoning, rich narratives",
        cost="high",
    ),
    "gpt-4.1": ModelInfo(
        name="GPT-4.1",
        description="Enhanced capabilities, improved accuracy",
        cost="high",
    ),
    "gpt-4.1-mini": ModelInfo(
        name="GPT-4.1 Mini",
        description="Balanced efficiency, solid performance",
        cost="medium",
    ),
    "gpt-4.1-nano": ModelInfo(
        name="GPT-4.1 Nano",
        description="Ultra-fast, lightweight responses",
        cost="low",
    ),
    "o4-mini": ModelInfo(
        name="o4 Mini",
        description="Compact reasoning model",
        cost="medium",
    ),
}


class OpenAIProvider(BaseProvider):
    name = "openai"

    @classmethod
    def get_provider_info(cls) -> ProviderInfo:
        return ProviderInfo(
            id=ProviderType.OPENAI,
            name="OpenAI",
            models=list(_MODELS),
            model_info=dict(_MODELS),
            default_model="gpt-4o-mini",
            requires_api_key=True,
        )

    @property
    def _base_url(self) -> str:
        return (self.config.base_url or OPENAI_BASE_URL).rstrip("/")

    def _headers(self, api_key: str | None = None) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key or self.config.api_key}",
        }

    def _parse_response(self, data: dict) -> str:
        """Extract choices[0].message.content."""
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise LLMError("No response generated from OpenAI API")
        if not text:
            raise LLMError("No response generated from OpenAI API")
        return text

    async def _chat(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        body: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        url = f"{self._base_url}/chat/completions"
        logger.debug("openai call model=%s json_mode=%s", self.model, json_mode)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to OpenAI API at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise LLMError(f"OpenAI API returned HTTP {status}", status_code=status) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"OpenAI API timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"OpenAI API request failed: {type(e).__name__}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("OpenAI API returned a non-JSON body") from e
        return self._parse_response(data)

    async def _complete_turn(self, context: GameContext, player_action: str) -> str:
        cfg = self.config
        messages = [
            {"role": "system", "content": system_prompt(cfg.context_detail)},
            {
                "role": "user",
                "content": build_turn_prompt(
                    context, player_action, cfg.context_detail, cfg.history_length
                ),
            },
        ]
        return await self._chat(
            messages,
            temperature=cfg.temperature or 0.8,
            max_tokens=cfg.max_tokens or 1024,
            json_mode=True,
        )

    async def _complete_recap(self, context: GameContext, prompt: str) -> str:
        cfg = self.config
        messages = [
            {"role": "system", "content": RECAP_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": build_recap_prompt(
                    context, prompt, cfg.context_detail, cfg.history_length
                ),
            },
        ]
        return await self._chat(
            messages,
            temperature=cfg.temperature or 0.7,
            max_tokens=cfg.max_tokens or 512,
        )

    async def generate_text(
        self,
        prompt: str,
        *,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        if temperature is None:
            temperature = self.config.temperature if self.config.temperature is not None else 0.7
        text = await self._chat(
            [{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_output_tokens or 256,
        )
        return text.strip()

    async def validate_api_key(self, api_key: str) -> bool:
        """List models with the key; any non-2xx or network error means invalid."""
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(
                    f"{self._base_url}/models", headers=self._headers(api_key)
                )
            return resp.is_success
        except Exception:
            return False
