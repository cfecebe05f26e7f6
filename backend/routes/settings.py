"""Health check, provider catalogue, key validation and token estimate endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from chronicles import llm
from chronicles.tokens import cost_description, estimate_token_usage, format_token_count

from .models import TokenEstimateBody, ValidateKeyBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/providers")
async def providers():
    """All supported providers with their models and defaults."""
    return [info.model_dump(mode="json") for info in llm.all_providers()]


@router.post("/validate-key")
async def validate_key(body: ValidateKeyBody):
    """Check an API key against the vendor with a side-effect-free call."""
    if not llm.is_valid_provider_type(body.provider):
        return JSONResponse({"error": f"Unknown LLM provider: {body.provider}"}, status_code=400)
    adapter = llm.create_provider(body.provider, llm.ProviderConfig(api_key=body.api_key))
    return {"valid": await adapter.validate_api_key(body.api_key)}


@router.post("/token-estimate")
async def token_estimate(body: TokenEstimateBody):
    """Rough per-turn token usage and cost tier for the settings screen."""
    estimate = estimate_token_usage(
        context_detail=body.context_detail,
        history_length=body.history_length,
        max_tokens=body.max_tokens,
        context=body.game_context,
        player_action=body.player_action,
    )
    return {
        **estimate.model_dump(),
        "formatted_total": format_token_count(estimate.total),
        "description": cost_description(estimate.cost_tier),
    }
