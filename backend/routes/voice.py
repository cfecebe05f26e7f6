"""Voice selection for a dialogue speaker.

The LLM gets one short, low-temperature call through the voice limiter. Any
failure (no provider, limiter cooling down, vendor error, an answer that
names no listed voice) falls back to rule-based selection; this endpoint
never reports an error for those.
"""

import logging

from fastapi import APIRouter, Depends

from backend.deps import get_limiters, get_optional_manager
from chronicles.llm import LLMError
from chronicles.manager import ProviderManager
from chronicles.presentation import Voice, pick_voice_by_rules
from chronicles.prompts import build_voice_prompt
from chronicles.ratelimit import AuxiliaryLimiters, RateLimiterDisabled

from .models import VoiceSelectionBody

logger = logging.getLogger(__name__)

router = APIRouter()


def match_voice(answer: str, labels: list[str]) -> str | None:
    """Find the listed voice an LLM answer refers to."""
    answer = answer.strip().lower()
    if not answer:
        return None
    for label in labels:
        name = label.split(" (")[0].lower()
        if answer in label.lower() or name in answer:
            return label
    return None


def rule_based_voice(labels: list[str], response_type: str = "dialogue") -> str | None:
    voice = pick_voice_by_rules([Voice.from_label(label) for label in labels], response_type)
    return voice.label if voice else None


@router.post("/voice-selection")
async def voice_selection(
    body: VoiceSelectionBody,
    manager: ProviderManager | None = Depends(get_optional_manager),
    limiters: AuxiliaryLimiters = Depends(get_limiters),
):
    """Recommend one of the available voices for a character."""
    if not body.available_voices:
        return {"recommended_voice": None}

    if manager is not None:
        prompt = build_voice_prompt(body.character, body.available_voices, body.scenario)
        try:
            answer = await limiters.voice_selection.add_request(
                lambda: manager.generate_text(prompt, max_output_tokens=50, temperature=0.3)
            )
        except (RateLimiterDisabled, LLMError, ValueError) as e:
            logger.info("voice selection falling back to rules: %s", e)
        else:
            matched = match_voice(answer, body.available_voices)
            if matched is not None:
                return {"recommended_voice": matched}
            logger.warning("invalid voice recommendation %r, using fallback", answer)

    return {"recommended_voice": rule_based_voice(body.available_voices)}
