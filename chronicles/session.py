"""Client-side game state machine.

GameSession owns every piece of player state (character, narrative log,
environment, action choices, recap) and drives one turn at a time:

    idle
      → action submitted   (choices cleared, action echoed, short hold)
      → processing         (POST /api/game-response, SSE stream opened)
      → streaming          (text_chunk events accumulate into current_response)
      → finalized          (complete: one narrative entry appended, recap check)
      | errored            (error: system message, processing cleared)

State is persisted through Storage after every mutation. character_updates
are applied the moment the event arrives, not deferred to `complete`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from chronicles.manager import headers_for_settings
from chronicles.models import (
    ActionChoice,
    CharacterState,
    GameContext,
    NarrativeEntry,
    SceneEnvironment,
    StoryRecap,
)
from chronicles.presentation import Presenter, VoiceSelector
from chronicles.storage import GameProgress, Settings, Storage

logger = logging.getLogger(__name__)

RECAP_INTERVAL = 5
RECAP_MIN_ACTIONS = 2

RECAP_PROMPT = (
    "Create a concise story recap in the style of a World of Warcraft quest "
    "journal entry. Keep it to 2-3 short paragraphs using double line breaks "
    "(\\n\\n) between them. Focus on: key encounters/conflicts and current "
    "situation. Use epic fantasy language befitting Azeroth but keep it compact "
    "and engaging. Include the most important NPCs met, locations visited, and "
    "conflicts faced. Write as if this were a brief entry in the hero's personal "
    "chronicle - memorable but not overly detailed."
)

RECAP_FALLBACK = (
    "The chronicler's quill runs dry as mystical energies interfere with the "
    "telling of recent deeds. The hero's tale continues, though some chapters "
    "remain unwritten..."
)


# ---------------------------------------------------------------------------
# Stream parsing and state deltas
# ---------------------------------------------------------------------------

def parse_sse_line(line: str) -> dict[str, Any] | None:
    """Decode one `data: {...}` line. Returns None for anything else.

    Malformed JSON is logged and skipped rather than raised.
    """
    if not line.startswith("data: "):
        return None
    try:
        event = json.loads(line[6:])
    except json.JSONDecodeError as e:
        logger.warning("skipping malformed SSE line: %s", e)
        return None
    if not isinstance(event, dict):
        logger.warning("skipping non-object SSE payload")
        return None
    return event


def apply_character_updates(
    character: CharacterState, updates: dict[str, Any]
) -> CharacterState:
    """Return a copy of `character` with a turn's deltas applied.

    Inventory removals go first (first exact match per item), then additions
    are appended. hp is taken as given, negative values included.
    """
    changes: dict[str, Any] = {}
    if updates.get("hp") is not None:
        changes["hp"] = updates["hp"]
    if updates.get("location"):
        changes["location"] = updates["location"]

    inventory_changes = updates.get("inventory_changes")
    if inventory_changes:
        inventory = list(character.inventory)
        for item in inventory_changes.get("removed") or []:
            if item in inventory:
                inventory.remove(item)
        inventory.extend(inventory_changes.get("added") or [])
        changes["inventory"] = inventory

    if not changes:
        return character
    return character.model_copy(update=changes)


def history_line(entry: NarrativeEntry) -> str:
    if entry.type == "action":
        return f"> {entry.content}"
    if entry.type == "dialogue":
        return f'{entry.speaker}: "{entry.content}"'
    return entry.content


def recap_line(entry: NarrativeEntry) -> str:
    if entry.type == "action":
        return f"Player: {entry.content}"
    if entry.type == "dialogue" and entry.speaker:
        return f'{entry.speaker}: "{entry.content}"'
    return entry.content


@dataclass
class _StreamingResponse:
    type: str = "narrative"
    content: str = ""
    speaker: str | None = None
    speaker_title: str | None = None

    def entry(self) -> NarrativeEntry:
        return NarrativeEntry(
            type=self.type,
            content=self.content,
            speaker=self.speaker,
            speaker_title=self.speaker_title,
        )


# ---------------------------------------------------------------------------
# GameSession
# ---------------------------------------------------------------------------

class GameSession:
    def __init__(
        self,
        storage: Storage,
        client: httpx.AsyncClient,
        *,
        presenter: Presenter | None = None,
        action_hold: float = 1.0,
        recap_delay: float = 1.0,
    ) -> None:
        self.storage = storage
        self.client = client
        self.presenter = presenter
        self.action_hold = action_hold
        self.recap_delay = recap_delay

        self.progress: GameProgress = storage.load_game()
        self.settings: Settings = storage.load_settings()
        self.voice_selector = VoiceSelector(self.recommend_voice)
        if presenter is not None:
            # speech asks the server for dialogue voices through this cache
            presenter.voice_selector = self.voice_selector

        self.current_response: NarrativeEntry | None = None
        self.game_state: dict[str, Any] | None = None
        self.is_processing = False
        self.is_loading = False
        self._turn_in_flight = False
        self._tasks: set[asyncio.Task] = set()

    # ── persistence ──

    def _save(self) -> None:
        self.storage.save_game(self.progress)

    def save_settings(self, settings: Settings) -> None:
        self.settings = settings
        self.storage.save_settings(settings)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled background work (recap checks)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def character(self) -> CharacterState:
        return self.progress.character

    @property
    def narrative(self) -> list[NarrativeEntry]:
        return self.progress.narrative

    @property
    def action_choices(self) -> list[ActionChoice]:
        return self.progress.action_choices

    @property
    def choices_actionable(self) -> bool:
        return not self.is_processing and not self._turn_in_flight

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(
        self,
        scenario: str,
        character: CharacterState,
        intro_lines: list[str],
        starting_location: str | None = None,
    ) -> None:
        """Start a fresh adventure with an introductory narrative."""
        location = starting_location or character.location
        character = character.model_copy(update={"location": location})
        lines = intro_lines or [f"Your adventure as {character.name} begins..."]
        self.progress = GameProgress(
            character=character,
            narrative=[NarrativeEntry(type="narrative", content=line) for line in lines],
            current_environment=SceneEnvironment(
                description=location,
                atmosphere="The beginning of your adventure",
            ),
            scenario=scenario,
            game_started=True,
            scenario_selected=True,
            character_selected=True,
        )
        self.current_response = NarrativeEntry(type="narrative", content="\n\n".join(lines))
        self.voice_selector.clear_cache()
        self._save()

    def back_to_scenario_selection(self) -> None:
        self.progress = self.progress.model_copy(update={
            "scenario_selected": False,
            "character_selected": False,
            "game_started": False,
            "story_recap": None,
            "narrative": [],
            "action_choices": [],
        })
        self.current_response = None
        if self.presenter is not None:
            self.presenter.stop()
        self._save()

    def reset(self) -> None:
        """Wipe both persisted blobs and return to defaults."""
        if self.presenter is not None:
            self.presenter.stop()
        self.storage.clear()
        self.progress = GameProgress()
        self.settings = Settings()
        self.current_response = None
        self.game_state = None
        self.voice_selector.clear_cache()

    def leave(self) -> None:
        """Stop speech and reveal timers. An in-flight turn keeps running."""
        if self.presenter is not None:
            self.presenter.stop()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _context(self, history: list[str], current_context: str | None = None) -> GameContext:
        env = self.progress.current_environment
        return GameContext(
            scenario=self.progress.scenario,
            character=self.progress.character.snapshot(),
            narrative_history=history,
            current_context=current_context or (env.description if env else "Exploring the world"),
        )

    async def take_turn(self, action: str) -> bool:
        """Submit a player action. Returns False if a turn is already running."""
        if self._turn_in_flight or self.is_processing:
            logger.debug("turn already in flight, ignoring %r", action)
            return False
        self._turn_in_flight = True
        try:
            await self._run_turn(action)
        finally:
            self._turn_in_flight = False
        return True

    async def _run_turn(self, action: str) -> None:
        history = [history_line(e) for e in self.progress.narrative]

        self.progress.action_choices = []
        entry = NarrativeEntry(type="action", content=action)
        self.current_response = entry
        self.progress.narrative.append(entry)
        self._save()

        await asyncio.sleep(self.action_hold)

        self.current_response = None
        self.is_processing = True
        context = self._context(history)
        body = {
            "gameContext": context.model_dump(mode="json", by_alias=True),
            "playerAction": action,
        }

        streaming = _StreamingResponse()
        try:
            async with self.client.stream(
                "POST",
                "/api/game-response",
                json=body,
                headers=headers_for_settings(self.settings.llm),
            ) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    self._fail(_error_from_body(resp))
                    return
                async for line in resp.aiter_lines():
                    event = parse_sse_line(line)
                    if event is not None:
                        self._handle_event(event, streaming)
        except httpx.HTTPError as e:
            logger.error("turn request failed: %s", e)
            self._fail(None)
        finally:
            if self.is_processing:
                logger.warning("turn stream ended without a terminal event")
                self.is_processing = False

    def _fail(self, message: str | None) -> None:
        self.is_processing = False
        content = (
            f"Something went wrong: {message}" if message
            else "Something went wrong. Please try again."
        )
        self.current_response = NarrativeEntry(type="system", content=content)

    def _handle_event(self, event: dict[str, Any], streaming: _StreamingResponse) -> None:
        kind = event.get("type")
        try:
            if kind == "text_chunk":
                streaming.content += event["text"]
                self.current_response = streaming.entry()
            elif kind == "metadata":
                data = event["data"]
                streaming.type = data["response_type"]
                streaming.speaker = data.get("speaker")
                streaming.speaker_title = data.get("speaker_title")
                self.current_response = streaming.entry()
            elif kind == "environment":
                data = event["data"]
                self.progress.current_environment = SceneEnvironment(
                    description=data["description"],
                    npcs_present=data.get("npcs_present") or [],
                    sounds=data.get("sounds"),
                    atmosphere=data.get("atmosphere"),
                )
                self._save()
            elif kind == "action_choices":
                self.progress.action_choices = [
                    ActionChoice.model_validate(c) for c in event["data"]
                ]
                self._save()
            elif kind == "character_updates":
                if event.get("data"):
                    self.progress.character = apply_character_updates(
                        self.progress.character, event["data"]
                    )
                    self._save()
            elif kind == "game_state":
                self.game_state = event.get("data")
            elif kind == "complete":
                self._finalize(streaming)
            elif kind == "error":
                logger.error("turn stream error: %s", event.get("message"))
                self._fail(event.get("message") or "unknown error")
            # "processing" and unknown types need no handling
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning("skipping malformed %s event: %s", kind, e)

    def _finalize(self, streaming: _StreamingResponse) -> None:
        entry = streaming.entry()
        self.progress.narrative.append(entry)
        self.current_response = entry
        self.is_processing = False
        self._save()
        if self.presenter is not None:
            self.presenter.start(entry)
        self._spawn(self._recap_later())

    # ------------------------------------------------------------------
    # Story recap
    # ------------------------------------------------------------------

    async def _recap_later(self) -> None:
        await asyncio.sleep(self.recap_delay)
        await self.generate_story_recap()

    def _action_count(self) -> int:
        return sum(1 for e in self.progress.narrative if e.type == "action")

    def recap_due(self) -> bool:
        count = self._action_count()
        if count < RECAP_MIN_ACTIONS:
            return False
        recap = self.progress.story_recap
        return recap is None or count - recap.turn_count >= RECAP_INTERVAL

    async def generate_story_recap(self) -> bool:
        """Regenerate the recap if due. Returns True if a recap was stored."""
        if not self.recap_due():
            return False
        count = self._action_count()
        text = "\n".join(
            recap_line(e) for e in self.progress.narrative if e.content.strip()
        )
        if not text.strip():
            return False

        context = self._context([text], current_context="Generate story recap")
        self.is_loading = True
        try:
            resp = await self.client.post(
                "/api/generate-story-recap",
                json={
                    "gameContext": context.model_dump(mode="json", by_alias=True),
                    "prompt": RECAP_PROMPT,
                },
                headers=headers_for_settings(self.settings.llm),
            )
            resp.raise_for_status()
            data = resp.json()
            content = data.get("recap") or data.get("content") or "Story recap unavailable"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("story recap failed, storing fallback: %s", e)
            content = RECAP_FALLBACK
        finally:
            self.is_loading = False

        self.progress.story_recap = StoryRecap(content=content, turn_count=count)
        self._save()
        return True

    # ------------------------------------------------------------------
    # Voice recommendation
    # ------------------------------------------------------------------

    async def recommend_voice(self, speaker: str, voice_labels: list[str]) -> str | None:
        """Ask the server which voice suits `speaker`. None on any failure."""
        try:
            resp = await self.client.post(
                "/api/voice-selection",
                json={
                    "character": speaker,
                    "available_voices": voice_labels,
                    "scenario": self.progress.scenario or "general",
                },
                headers=headers_for_settings(self.settings.llm),
            )
            resp.raise_for_status()
            return resp.json().get("recommended_voice")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("voice recommendation failed: %s", e)
            return None


def _error_from_body(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {resp.status_code}"
