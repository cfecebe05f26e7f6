"""Provider adapter contract shared by every LLM vendor.

An adapter turns a GameContext + player action into a validated
StructuredTurnResponse. The two game-critical calls (generate_response,
generate_story_recap) never raise: on any failure they return a fallback so
the turn pipeline always has something structurally valid to stream.
generate_text is the ancillary call and propagates errors, because its
callers apply their own fallback policy.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from chronicles.models import (
    ContextDetail,
    GameContext,
    StructuredTurnResponse,
    validate_turn_response,
)

logger = logging.getLogger(__name__)

CostTier = Literal["low", "medium", "high"]

RECAP_APOLOGY = (
    "The chronicle keeper's quill seems to have run dry. A summary of recent "
    "events cannot be penned at this time."
)


class ProviderType(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


class ModelInfo(BaseModel):
    name: str
    description: str
    cost: CostTier


class ProviderInfo(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: ProviderType
    name: str
    models: list[str]
    model_info: dict[str, ModelInfo]
    default_model: str
    requires_api_key: bool = True


class ProviderConfig(BaseModel):
    """Per-adapter generation settings. Frozen so managers can compare them."""

    model_config = ConfigDict(frozen=True)

    api_key: str
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    history_length: int = Field(default=5, ge=1)
    context_detail: ContextDetail = "standard"
    base_url: str | None = None  # OpenAI-compatible endpoints only


# ---------------------------------------------------------------------------
# LLMError — raised by adapters for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when a vendor API cannot be reached or returns an error.

    For non-2xx responses the message contains "HTTP <status>", which is what
    the rate limiter looks for to detect quota exhaustion (429).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Response cleaning
# ---------------------------------------------------------------------------

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence (```json or bare ```)."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned


def parse_turn_text(text: str) -> StructuredTurnResponse:
    """Decode a vendor's raw turn text and validate it.

    Raises LLMError on undecodable JSON and pydantic.ValidationError on
    contract violations.
    """
    cleaned = strip_code_fence(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.debug("unparseable turn text: %r", text[:500])
        raise LLMError(f"Failed to parse LLM response as JSON: {e}") from e
    return validate_turn_response(data)


def clean_recap_text(text: str) -> str:
    """Strip JSON wrappers and markdown fences a model may put around prose."""
    cleaned = text.strip()
    if cleaned.startswith("{") and cleaned.endswith("}"):
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            inner = parsed.get("text") or parsed.get("content")
            if isinstance(inner, str):
                cleaned = inner
    cleaned = re.sub(r"```(?:json)?\s*", "", cleaned)
    return cleaned.strip()


def fallback_response(error: Exception) -> StructuredTurnResponse:
    """The deterministic turn returned when generation fails for any reason."""
    return StructuredTurnResponse.model_validate({
        "response_type": "narrative",
        "content": {
            "text": (
                "The mystical energies around you seem unstable. Something went "
                f"wrong with your action. (Error: {error})"
            ),
        },
        "environment": {
            "description": "The world seems hazy and uncertain",
            "atmosphere": "Confused and disoriented",
        },
        "action_choices": [
            {
                "id": "try_again",
                "text": "Try again",
                "description": "Attempt to focus and try your action once more",
            }
        ],
        "character_updates": {},
        "game_state": {"status": "continue", "context": "error_occurred"},
    })


# ---------------------------------------------------------------------------
# BaseProvider
# ---------------------------------------------------------------------------

class BaseProvider(ABC):
    """One vendor's HTTP API behind the uniform adapter interface.

    Subclasses implement the vendor calls (_complete_turn, _complete_recap,
    generate_text, validate_api_key); failure policy for the game-critical
    calls lives here.
    """

    name = "provider"

    def __init__(self, config: ProviderConfig, timeout: float = 60.0) -> None:
        self.config = config
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self.config.model or self.get_provider_info().default_model

    @classmethod
    @abstractmethod
    def get_provider_info(cls) -> ProviderInfo: ...

    @abstractmethod
    async def validate_api_key(self, api_key: str) -> bool: ...

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        *,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...

    @abstractmethod
    async def _complete_turn(self, context: GameContext, player_action: str) -> str:
        """Return the vendor's raw text for a structured turn."""

    @abstractmethod
    async def _complete_recap(self, context: GameContext, prompt: str) -> str:
        """Return the vendor's raw text for a story recap."""

    async def generate_response(
        self, context: GameContext, player_action: str
    ) -> StructuredTurnResponse:
        try:
            text = await self._complete_turn(context, player_action)
            return parse_turn_text(text)
        except Exception as e:
            logger.warning("%s turn generation failed, using fallback: %s", self.name, e)
            return fallback_response(e)

    async def generate_story_recap(
        self, context: GameContext, prompt: str, *, fallback: bool = True
    ) -> str:
        """Summarise the adventure.

        With fallback=False vendor failures raise LLMError instead of turning
        into the apology text, so a caller's rate limiter can see them.
        """
        try:
            text = await self._complete_recap(context, prompt)
            return clean_recap_text(text)
        except Exception as e:
            if not fallback:
                if isinstance(e, LLMError):
                    raise
                raise LLMError(str(e)) from e
            logger.warning("%s recap generation failed: %s", self.name, e)
            return f"{RECAP_APOLOGY} ({e})"
