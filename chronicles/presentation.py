"""Presentation effects for a finalized turn: typewriter reveal and speech.

The reveal re-displays an entry's text either instantly or one character at
a time. Speech, when enabled, starts at the same moment the reveal starts.
Skipping the reveal shows the full text but lets speech finish; stopping the
presenter (leaving the game screen) halts both, but never touches an
in-flight turn request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from chronicles.models import NarrativeEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Voices
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Voice:
    name: str
    lang: str = ""

    @property
    def label(self) -> str:
        return f"{self.name} ({self.lang})" if self.lang else self.name

    @classmethod
    def from_label(cls, label: str) -> Voice:
        """Parse "Samantha (en-US)" back into a Voice."""
        name, sep, rest = label.partition(" (")
        if sep and rest.endswith(")"):
            return cls(name=name, lang=rest[:-1])
        return cls(name=label)


_DIALOGUE_VOICES = ("Samantha", "Alex", "Victoria", "Daniel")
_NARRATIVE_VOICES = ("David", "Samantha", "Daniel", "Aaron")


def pick_voice_by_rules(voices: list[Voice], response_type: str) -> Voice | None:
    """Rule-based choice: preferred names for the content type, then any
    English voice, then the first voice."""
    if not voices:
        return None
    if response_type == "dialogue":
        preferred = _DIALOGUE_VOICES
        qualities = ("Natural", "Enhanced")
    else:
        preferred = _NARRATIVE_VOICES
        qualities = ("Natural",)

    for v in voices:
        if any(p in v.name for p in preferred):
            return v
        if v.lang.startswith("en-") and any(q in v.name for q in qualities):
            return v
    for v in voices:
        if v.lang.startswith("en-"):
            return v
    return voices[0]


RecommendFn = Callable[[str, list[str]], Awaitable[str | None]]


class VoiceSelector:
    """Per-speaker voice choice, asking an LLM once per speaker.

    `recommend(speaker, voice_labels)` returns a label or None; it must not
    raise. Recommendations are cached per speaker until clear_cache().
    """

    def __init__(self, recommend: RecommendFn) -> None:
        self._recommend = recommend
        self._cache: dict[str, str] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache(self) -> dict[str, str]:
        return dict(self._cache)

    async def voice_for(
        self, response_type: str, speaker: str | None, voices: list[Voice]
    ) -> Voice | None:
        if not voices:
            return None

        if response_type == "dialogue" and speaker:
            cached = self._cache.get(speaker)
            if cached:
                for v in voices:
                    if v.name == cached:
                        return v

            label = await self._recommend(speaker, [v.label for v in voices])
            if label:
                name = label.split(" (")[0]
                for v in voices:
                    if name in v.name:
                        self._cache[speaker] = v.name
                        return v

        return pick_voice_by_rules(voices, response_type)


# ---------------------------------------------------------------------------
# Speech
# ---------------------------------------------------------------------------

@dataclass
class Utterance:
    text: str
    voice: Voice | None = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 0.8


class Speaker(Protocol):
    """Text-to-speech backend."""

    def speak(self, utterance: Utterance) -> None: ...

    def cancel(self) -> None: ...


# (keywords, pitch, rate multiplier); first match on speaker + title wins
_ARCHETYPES: list[tuple[tuple[str, ...], float, float]] = [
    (("lich", "demon", "betrayer", "illidan"), 0.7, 0.8),
    (("banshee", "sylvanas", "forsaken"), 1.0, 0.85),
    (("warchief", "hellscream", "garrosh", "warlord"), 0.8, 1.1),
    (("king", "lord", "prince", "arthas"), 0.8, 0.9),
    (("shaman", "elder", "sage", "chieftain", "thrall"), 0.9, 0.95),
    (("sorceress", "priestess", "lady", "queen", "jaina"), 1.1, 1.0),
]


def voice_profile(
    response_type: str,
    speaker: str | None,
    speaker_title: str | None = None,
    base_rate: float = 1.0,
) -> tuple[float, float]:
    """Return (pitch, rate) for an entry."""
    if response_type != "dialogue" or not speaker:
        return 1.0, base_rate

    haystack = f"{speaker} {speaker_title or ''}".lower()
    for keywords, pitch, rate in _ARCHETYPES:
        if any(k in haystack for k in keywords):
            return pitch, base_rate * rate
    return 1.05, base_rate


def reveal_delay_ms(entry_type: str, speed: int) -> float:
    """Per-character reveal delay: actions twice as fast, dialogue slower."""
    if entry_type == "action":
        return max(5, speed / 2)
    if entry_type == "dialogue":
        return speed + 10
    return speed


# ---------------------------------------------------------------------------
# Presenter
# ---------------------------------------------------------------------------

class Presenter:
    def __init__(
        self,
        typewriter_enabled: bool = True,
        typewriter_speed: int = 15,
        tts_enabled: bool = False,
        speech_rate: float = 1.0,
        preferred_voice: str = "",
        speaker: Speaker | None = None,
        voices: list[Voice] | None = None,
        voice_selector: VoiceSelector | None = None,
        on_change: Callable[[str], None] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.typewriter_enabled = typewriter_enabled
        self.typewriter_speed = typewriter_speed
        self.tts_enabled = tts_enabled
        self.speech_rate = speech_rate
        self.preferred_voice = preferred_voice
        self.speaker = speaker
        self.voices = voices or []
        self.voice_selector = voice_selector
        self._on_change = on_change
        self._sleep = sleep

        self.entry: NarrativeEntry | None = None
        self.displayed = ""
        self.is_typing = False
        self._reveal_task: asyncio.Task | None = None
        self._speech_task: asyncio.Task | None = None

    @classmethod
    def from_ui(cls, ui, **kwargs) -> Presenter:
        """Build from a storage.UISettings."""
        return cls(
            typewriter_enabled=ui.typewriter_enabled,
            typewriter_speed=ui.typewriter_speed,
            tts_enabled=ui.tts_enabled,
            speech_rate=ui.speech_rate,
            preferred_voice=ui.voice,
            **kwargs,
        )

    def _show(self, text: str) -> None:
        self.displayed = text
        if self._on_change is not None:
            self._on_change(text)

    def _cancel_reveal(self) -> None:
        if self._reveal_task is not None and not self._reveal_task.done():
            self._reveal_task.cancel()
        self._reveal_task = None

    def start(self, entry: NarrativeEntry) -> None:
        """Begin presenting `entry`. Must be called from a running event loop."""
        self._cancel_reveal()
        self.entry = entry

        if self.tts_enabled and self.speaker is not None:
            self._start_speech(entry)

        if not self.typewriter_enabled:
            self.is_typing = False
            self._show(entry.content)
            return

        self.is_typing = True
        self._show("")
        self._reveal_task = asyncio.create_task(self._reveal(entry))

    async def wait(self) -> None:
        """Wait for the current reveal (and speech voice lookup) to finish."""
        for task in (self._reveal_task, self._speech_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _reveal(self, entry: NarrativeEntry) -> None:
        delay = reveal_delay_ms(entry.type, self.typewriter_speed) / 1000
        text = entry.content
        for i in range(1, len(text) + 1):
            self._show(text[:i])
            if i < len(text):
                await self._sleep(delay)
        self.is_typing = False

    def skip(self) -> None:
        """Show the full text now. Speech keeps going."""
        if self.entry is None or not self.is_typing:
            return
        self._cancel_reveal()
        self.is_typing = False
        self._show(self.entry.content)

    def stop(self) -> None:
        """Halt speech and timers (leaving the game screen)."""
        self._cancel_reveal()
        self.is_typing = False
        if self._speech_task is not None and not self._speech_task.done():
            self._speech_task.cancel()
        self._speech_task = None
        if self.speaker is not None:
            self.speaker.cancel()

    # ── speech ──

    def _start_speech(self, entry: NarrativeEntry) -> None:
        if self._speech_task is not None and not self._speech_task.done():
            self._speech_task.cancel()
        self.speaker.cancel()
        self._speech_task = asyncio.create_task(self._speak(entry))

    async def _speak(self, entry: NarrativeEntry) -> None:
        voice: Voice | None = None
        if self.voice_selector is not None and self.voices:
            voice = await self.voice_selector.voice_for(entry.type, entry.speaker, self.voices)
        if voice is None and self.preferred_voice:
            voice = next((v for v in self.voices if v.name == self.preferred_voice), None)

        pitch, rate = voice_profile(
            entry.type, entry.speaker, entry.speaker_title, self.speech_rate
        )
        logger.debug("speaking %d chars voice=%s", len(entry.content), voice and voice.name)
        self.speaker.speak(Utterance(text=entry.content, voice=voice, rate=rate, pitch=pitch))
