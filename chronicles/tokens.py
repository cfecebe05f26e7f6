"""Rough token and cost estimate for the settings screen.

Four characters are counted as one token. Prompt and character-context sizes
are fixed per context-detail tier; output is whatever max_tokens allows.
"""

from __future__ import annotations

import math

from pydantic import BaseModel

from chronicles.llm.base import CostTier
from chronicles.models import ContextDetail, GameContext

PROMPT_SIZES: dict[str, int] = {"minimal": 150, "standard": 400, "rich": 600}
CHARACTER_CONTEXT_SIZES: dict[str, int] = {"minimal": 30, "standard": 80, "rich": 150}

DEFAULT_SCENARIO_TOKENS = 50
TOKENS_PER_HISTORY_ITEM = 100

_COST_DESCRIPTIONS: dict[str, str] = {
    "low": "Budget-friendly",
    "medium": "Moderate cost",
    "high": "Premium cost",
}


class TokenEstimate(BaseModel):
    input: int
    output: int
    total: int
    cost_tier: CostTier


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def estimate_token_usage(
    context_detail: ContextDetail = "standard",
    history_length: int = 5,
    max_tokens: int = 1024,
    context: GameContext | None = None,
    player_action: str = "",
) -> TokenEstimate:
    input_tokens = PROMPT_SIZES[context_detail] + CHARACTER_CONTEXT_SIZES[context_detail]

    if context is not None and context.scenario:
        input_tokens += estimate_tokens(context.scenario)
    else:
        input_tokens += DEFAULT_SCENARIO_TOKENS

    if context is not None:
        recent = context.narrative_history[-history_length:]
        input_tokens += estimate_tokens("\n".join(recent))
    else:
        input_tokens += history_length * TOKENS_PER_HISTORY_ITEM

    input_tokens += estimate_tokens(player_action)

    total = input_tokens + max_tokens
    if total < 800:
        tier = "low"
    elif total < 1500:
        tier = "medium"
    else:
        tier = "high"
    return TokenEstimate(input=input_tokens, output=max_tokens, total=total, cost_tier=tier)


def format_token_count(count: int) -> str:
    """1234 -> "1.2k"; counts under a thousand are printed as-is."""
    if count >= 1000:
        return f"{count / 1000:.1f}k"
    return str(count)


def cost_description(tier: CostTier) -> str:
    return _COST_DESCRIPTIONS[tier]
