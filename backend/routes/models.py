"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, ConfigDict, Field

from chronicles.models import ContextDetail, GameContext


class TurnBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_context: GameContext = Field(alias="gameContext")
    player_action: str = Field(alias="playerAction", min_length=1)


class RecapBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_context: GameContext = Field(alias="gameContext")
    prompt: str


class VoiceSelectionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    character: str
    available_voices: list[str] = Field(alias="availableVoices")
    scenario: str = "general"


class ValidateKeyBody(BaseModel):
    provider: str
    api_key: str


class TokenEstimateBody(BaseModel):
    context_detail: ContextDetail = "standard"
    history_length: int = Field(default=5, ge=1)
    max_tokens: int = Field(default=1024, gt=0)
    game_context: GameContext | None = None
    player_action: str = ""
