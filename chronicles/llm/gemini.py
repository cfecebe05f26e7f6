"""Google Gemini adapter (generateContent REST API).

    POST {base}/models/{model}:generateContent   (key in x-goog-api-key)
      {"contents": [{"parts": [{"text": ...}]}],
       "generationConfig": {"temperature", "topK", "topP", "maxOutputTokens"}}
    Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

Gemini has no system role in this call shape, so the system prompt and the
user turn are sent as one text part.
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

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_MODELS: dict[str, ModelInfo] = {
    "gemini-1.5-flash": ModelInfo(
        name="Gemini 1.5 Flash",
        description="Fast responses, creative storytelling",
        cost="low",
    ),
    "gemini-1.5-pro": ModelInfo(
        name="Gemini 1.5 Pro",
        description="Deep intelligence, nuanced narratives",
        cost="medium",
    ),
    "gemini-2.5-pro": ModelInfo(
        name="Gemini 2.5 Pro",
        description="Next-gen intelligence, advanced reasoning",
        cost="high",
    ),
    "gemini-2.5-flash": ModelInfo(
        name="Gemini 2.5 Flash",
        description="Ultra-fast next-gen, enhanced creativity",
        cost="medium",
    ),
    "gemini-2.5-flash-lite": ModelInfo(
        name="Gemini 2.5 Flash Lite",
        description="Lightweight and inexpensive",
        cost="low",
    ),
}


class GeminiProvider(BaseProvider):
    name = "gemini"

    @classmethod
    def get_provider_info(cls) -> ProviderInfo:
        return ProviderInfo(
            id=ProviderType.GEMINI,
            name="Google Gemini",
            models=list(_MODELS),
            model_info=dict(_MODELS),
            default_model="gemini-1.5-flash",
            requires_api_key=True,
        )

    def _url(self) -> str:
        return f"{GEMINI_BASE_URL}/models/{self.model}:generateContent"

    def _headers(self, api_key: str | None = None) -> dict[str, str]:
        # Header rather than ?key= so the key never shows up in logged URLs
        return {
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
            "x-goog-api-key": api_key or self.config.api_key,
        }

    def _body(self, text: str, temperature: float, max_tokens: int) -> dict:
        return {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "temperature": temperature,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": max_tokens,
            },
        }

    def _parse_response(self, data: dict) -> str:
        """Extract candidates[0].content.parts[0].text."""
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise LLMError("No response generated from Gemini API")
        if not text:
            raise LLMError("No response generated from Gemini API")
        return text

    async def _post(self, body: dict) -> str:
        logger.debug("gemini call model=%s", self.model)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url(), json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError("Cannot connect to Gemini API") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise LLMError(f"Gemini API returned HTTP {status}", status_code=status) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"Gemini API timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"Gemini API request failed: {type(e).__name__}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("Gemini API returned a non-JSON body") from e
        return self._parse_response(data)

    async def _complete_turn(self, context: GameContext, player_action: str) -> str:
        cfg = self.config
        text = (
            system_prompt(cfg.context_detail)
            + "\n\n"
            + build_turn_prompt(context, player_action, cfg.context_detail, cfg.history_length)
        )
        return await self._post(self._body(
            text,
            temperature=cfg.temperature or 0.8,
            max_tokens=cfg.max_tokens or 1024,
        ))

    async def _complete_recap(self, context: GameContext, prompt: str) -> str:
        cfg = self.config
        text = (
            RECAP_SYSTEM_PROMPT
            + "\n\n"
            + build_recap_prompt(context, prompt, cfg.context_detail, cfg.history_length)
        )
        return await self._post(self._body(
            text,
            temperature=cfg.temperature or 0.7,
            max_tokens=cfg.max_tokens or 512,
        ))

    async def generate_text(
        self,
        prompt: str,
        *,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        if temperature is None:
            temperature = self.config.temperature if self.config.temperature is not None else 0.7
        text = await self._post(self._body(
            prompt,
            temperature=temperature,
            max_tokens=max_output_tokens or 256,
        ))
        return text.strip()

    async def validate_api_key(self, api_key: str) -> bool:
        """List models with the key; any non-2xx or network error means invalid."""
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"{GEMINI_BASE_URL}/models", headers=self._headers(api_key))
            return resp.is_success
        except Exception:
            return False
