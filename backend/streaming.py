"""Turn streaming state machine.

One request produces, in order:

    processing
    text_chunk*          (content.text split on whitespace, isComplete on the last)
    metadata             {response_type, speaker, speaker_title}
    environment
    action_choices
    [character_updates]  only if the turn carries them
    [game_state]         only if the turn carries them
    complete

Any exception (including the turn timeout) after `processing` produces a
single `error` event and ends the stream. Events already sent stand.

The vendor call is one blocking request; the chunking only simulates
incremental delivery for the client's typewriter effect.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any

from chronicles.manager import ProviderManager
from chronicles.models import GameContext

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"(\s+)")


def sse_frame(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def split_chunks(text: str) -> list[str]:
    """Split into words and whitespace runs, keeping both."""
    return [part for part in _WHITESPACE.split(text) if part]


async def turn_events(
    manager: ProviderManager,
    context: GameContext,
    player_action: str,
    chunk_delay: float = 0.05,
    timeout: float | None = 90.0,
) -> AsyncIterator[dict[str, Any]]:
    """Yield the event dicts for one turn."""
    yield {"type": "processing", "message": "Generating response..."}

    try:
        response = await asyncio.wait_for(
            manager.generate_response(context, player_action), timeout=timeout
        )

        chunks = split_chunks(response.content.text)
        for i, chunk in enumerate(chunks):
            yield {
                "type": "text_chunk",
                "text": chunk,
                "isComplete": i == len(chunks) - 1,
            }
            if chunk_delay > 0:
                await asyncio.sleep(chunk_delay)

        yield {
            "type": "metadata",
            "data": {
                "response_type": response.response_type,
                "speaker": response.content.speaker,
                "speaker_title": response.content.speaker_title,
            },
        }
        yield {
            "type": "environment",
            "data": response.environment.model_dump(exclude_none=True),
        }
        yield {
            "type": "action_choices",
            "data": [c.model_dump(exclude_none=True) for c in response.action_choices],
        }
        if response.character_updates is not None:
            yield {
                "type": "character_updates",
                "data": response.character_updates.model_dump(exclude_none=True),
            }
        if response.game_state is not None:
            yield {
                "type": "game_state",
                "data": response.game_state.model_dump(exclude_none=True),
            }
        yield {"type": "complete"}
    except asyncio.TimeoutError:
        logger.error("turn generation timed out after %ss", timeout)
        yield {"type": "error", "message": f"The turn timed out after {timeout:g} seconds"}
    except Exception as e:
        logger.exception("turn stream failed")
        yield {"type": "error", "message": str(e) or e.__class__.__name__}


async def turn_stream(
    manager: ProviderManager,
    context: GameContext,
    player_action: str,
    chunk_delay: float = 0.05,
    timeout: float | None = 90.0,
) -> AsyncIterator[str]:
    """turn_events encoded as SSE frames."""
    async for event in turn_events(manager, context, player_action, chunk_delay, timeout):
        yield sse_frame(event)
