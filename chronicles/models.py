"""Core domain models.

The provider contract (StructuredTurnResponse) and every piece of client
state are pydantic models. The turn contract is strict: unknown keys, wrong
primitive types and enum values outside the closed sets are rejected rather
than coerced. Client-side state models are lenient so older save files still
load.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    model_validator,
)

ResponseType = Literal["narrative", "dialogue"]
GameStatus = Literal["continue", "combat", "dialogue", "death", "victory"]
EntryType = Literal["narrative", "dialogue", "action", "system"]
ContextDetail = Literal["minimal", "standard", "rich"]


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Request input
# ---------------------------------------------------------------------------

class CharacterSnapshot(BaseModel):
    """The player character as sent to a provider."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    hp: int | float
    max_hp: int | float = Field(alias="maxHp")
    inventory: list[str] = Field(default_factory=list)
    location: str = ""
    class_: str = Field(default="", alias="class")
    level: int = 1


class GameContext(BaseModel):
    """Immutable per-turn request context."""

    scenario: str = ""
    character: CharacterSnapshot
    narrative_history: list[str] = Field(default_factory=list)
    current_context: str = ""


# ---------------------------------------------------------------------------
# Provider output contract
# ---------------------------------------------------------------------------

# Primitive fields use the Strict* types so "80" is never read as 80.

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TurnContent(_Strict):
    text: StrictStr = Field(min_length=1)
    speaker: StrictStr | None = None
    speaker_title: StrictStr | None = None


class Environment(_Strict):
    description: StrictStr
    npcs_present: list[StrictStr] | None = None
    sounds: StrictStr | None = None
    atmosphere: StrictStr | None = None


class ActionChoice(_Strict):
    id: StrictStr
    text: StrictStr
    description: StrictStr | None = None


class InventoryChanges(_Strict):
    added: list[StrictStr] | None = None
    removed: list[StrictStr] | None = None


class CharacterUpdates(_Strict):
    hp: StrictInt | StrictFloat | None = None
    location: StrictStr | None = None
    inventory_changes: InventoryChanges | None = None


class GameStateUpdate(_Strict):
    status: GameStatus | None = None
    context: StrictStr | None = None


class StructuredTurnResponse(_Strict):
    response_type: ResponseType
    content: TurnContent
    environment: Environment
    action_choices: list[ActionChoice]
    character_updates: CharacterUpdates | None = None
    game_state: GameStateUpdate | None = None

    @model_validator(mode="after")
    def _check_turn(self) -> StructuredTurnResponse:
        if self.response_type == "dialogue" and not self.content.speaker:
            raise ValueError("dialogue responses require content.speaker")
        ids = [c.id for c in self.action_choices]
        if len(ids) != len(set(ids)):
            raise ValueError("action_choices ids must be unique within a turn")
        return self


def validate_turn_response(raw: Any) -> StructuredTurnResponse:
    """Validate a decoded provider payload against the turn contract.

    Raises pydantic.ValidationError on any deviation.
    """
    return StructuredTurnResponse.model_validate(raw)


# ---------------------------------------------------------------------------
# Client state
# ---------------------------------------------------------------------------

class NarrativeEntry(BaseModel):
    """One line of the append-only narrative log."""

    type: EntryType
    content: str
    speaker: str | None = None
    speaker_title: str | None = None
    timestamp: int = Field(default_factory=now_ms)


class CharacterState(BaseModel):
    name: str = "Adventurer"
    hp: int | float = 100
    max_hp: int | float = 100
    inventory: list[str] = Field(
        default_factory=lambda: ["Basic Sword", "Leather Armor", "Health Potion"]
    )
    location: str = "Eastern Kingdoms"
    class_name: str = "Warrior"
    level: int = 1
    abilities: list[str] = Field(default_factory=list)
    is_custom: bool = True

    def snapshot(self) -> CharacterSnapshot:
        return CharacterSnapshot(
            name=self.name,
            hp=self.hp,
            max_hp=self.max_hp,
            inventory=list(self.inventory),
            location=self.location,
            class_=self.class_name,
            level=self.level,
        )


class SceneEnvironment(BaseModel):
    description: str
    npcs_present: list[str] = Field(default_factory=list)
    sounds: str | None = None
    atmosphere: str | None = None


class StoryRecap(BaseModel):
    content: str
    last_updated: int = Field(default_factory=now_ms)
    turn_count: int = 0
