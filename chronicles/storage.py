"""JSON file storage for the local player.

Two independently versioned blobs live under a base directory:

    {base}/
      game.json        ← domain state: character, narrative, recap, flow flags
      settings.json    ← provider/model/key + generation params, UI preferences

A blob whose version is not the current one (or that fails to parse) is
replaced by defaults for that blob only; the other blob is unaffected.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from chronicles.manager import LLMSettings
from chronicles.models import (
    ActionChoice,
    CharacterState,
    NarrativeEntry,
    SceneEnvironment,
    StoryRecap,
)

logger = logging.getLogger(__name__)

GAME_VERSION = 1
SETTINGS_VERSION = 1


class GameProgress(BaseModel):
    character: CharacterState = Field(default_factory=CharacterState)
    narrative: list[NarrativeEntry] = Field(default_factory=list)
    current_environment: SceneEnvironment | None = None
    action_choices: list[ActionChoice] = Field(default_factory=list)
    story_recap: StoryRecap | None = None
    scenario: str = ""
    game_started: bool = False
    scenario_selected: bool = False
    character_selected: bool = False


class UISettings(BaseModel):
    tts_enabled: bool = False
    speech_rate: float = 1.0
    voice: str = ""
    typewriter_enabled: bool = True
    typewriter_speed: int = 15  # ms per character
    music_enabled: bool = True
    music_volume: float = Field(default=0.3, ge=0.0, le=1.0)


class Settings(BaseModel):
    llm: LLMSettings = Field(default_factory=LLMSettings)
    ui: UISettings = Field(default_factory=UISettings)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def game_file(self) -> Path:
        return self._base / "game.json"

    @property
    def settings_file(self) -> Path:
        return self._base / "settings.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(path)

    def _load_blob(self, path: Path, version: int) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            data = self._read_json(path)
        except (OSError, ValueError) as e:
            # ValueError covers bad JSON and bytes that are not UTF-8
            logger.warning("discarding unreadable %s: %s", path.name, e)
            return None
        if not isinstance(data, dict) or data.get("version") != version:
            logger.info("discarding %s with unsupported version", path.name)
            return None
        return data

    # ------------------------------------------------------------------
    # Game progress
    # ------------------------------------------------------------------

    def load_game(self) -> GameProgress:
        data = self._load_blob(self.game_file, GAME_VERSION)
        if data is None:
            return GameProgress()
        data.pop("version")
        try:
            return GameProgress.model_validate(data)
        except ValidationError as e:
            logger.warning("discarding invalid game.json: %s", e)
            return GameProgress()

    def save_game(self, progress: GameProgress) -> None:
        self._write_json(
            self.game_file,
            {"version": GAME_VERSION, **progress.model_dump(mode="json")},
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def load_settings(self) -> Settings:
        data = self._load_blob(self.settings_file, SETTINGS_VERSION)
        if data is None:
            return Settings()
        data.pop("version")
        try:
            return Settings.model_validate(data)
        except ValidationError as e:
            logger.warning("discarding invalid settings.json: %s", e)
            return Settings()

    def save_settings(self, settings: Settings) -> None:
        self._write_json(
            self.settings_file,
            {"version": SETTINGS_VERSION, **settings.model_dump(mode="json")},
        )

    def clear(self) -> None:
        """Remove both blobs (full reset)."""
        for path in (self.game_file, self.settings_file):
            path.unlink(missing_ok=True)
