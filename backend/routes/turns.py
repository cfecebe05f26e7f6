"""Turn (SSE) and story recap endpoints."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from backend.deps import get_limiters, get_manager
from backend.streaming import turn_stream
from chronicles.llm import LLMError
from chronicles.manager import ProviderManager
from chronicles.ratelimit import AuxiliaryLimiters, RateLimiterDisabled

from .models import RecapBody, TurnBody

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/game-response")
async def game_response(
    body: TurnBody,
    request: Request,
    manager: ProviderManager = Depends(get_manager),
):
    """Generate one turn and stream it as server-sent events."""
    config = request.app.state.config
    return StreamingResponse(
        turn_stream(
            manager,
            body.game_context,
            body.player_action,
            chunk_delay=config.stream_chunk_delay,
            timeout=config.turn_timeout,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/generate-story-recap")
async def generate_story_recap(
    body: RecapBody,
    manager: ProviderManager = Depends(get_manager),
    limiters: AuxiliaryLimiters = Depends(get_limiters),
):
    """Summarise the adventure so far (non-streaming)."""
    try:
        recap = await limiters.story_recap.add_request(
            lambda: manager.generate_story_recap(
                body.game_context, body.prompt, fallback=False
            )
        )
    except RateLimiterDisabled as e:
        logger.info("story recap skipped: %s", e)
        return JSONResponse({"error": str(e)}, status_code=500)
    except LLMError as e:
        logger.error("story recap failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=500)
    return {"recap": recap}
