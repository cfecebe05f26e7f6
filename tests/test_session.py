"""End-to-end tests for GameSession against the real app.

The session talks to the FastAPI app in-process through httpx's ASGI
transport; only the provider manager is replaced.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from backend.app import create_app
from backend.config import ServerConfig
from backend.deps import get_manager, get_optional_manager
from chronicles.llm import LLMError
from chronicles.models import CharacterState, NarrativeEntry, validate_turn_response
from chronicles.presentation import Presenter, Voice
from chronicles.session import (
    RECAP_FALLBACK,
    GameSession,
    apply_character_updates,
    history_line,
    parse_sse_line,
    recap_line,
)
from chronicles.storage import Storage

DIALOGUE = {
    "response_type": "dialogue",
    "content": {"text": "Lok'tar, friend.", "speaker": "Thrall", "speaker_title": "Warchief"},
    "environment": {"description": "Grommash Hold", "npcs_present": ["Thrall"]},
    "action_choices": [
        {"id": "salute", "text": "Salute the Warchief"},
        {"id": "leave", "text": "Leave the hold"},
    ],
}


def _turn(**extra) -> dict:
    return dict(DIALOGUE, **extra)


@pytest.fixture
def app():
    return create_app(ServerConfig(stream_chunk_delay=0, aux_min_interval=0))


@pytest.fixture
def manager(app) -> MagicMock:
    manager = MagicMock()
    manager.generate_response = AsyncMock(return_value=validate_turn_response(DIALOGUE))
    manager.generate_story_recap = AsyncMock(return_value="The hero came to Orgrimmar.")
    manager.generate_text = AsyncMock(return_value="Daniel")
    app.dependency_overrides[get_manager] = lambda: manager
    app.dependency_overrides[get_optional_manager] = lambda: manager
    return manager


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def session(storage: Storage, client: httpx.AsyncClient) -> GameSession:
    session = GameSession(storage, client, action_hold=0, recap_delay=0)
    session.begin(
        "Orgrimmar",
        CharacterState(name="Varok", inventory=["Sword", "Potion"], class_name="Warrior"),
        ["You arrive at the gates of Orgrimmar."],
    )
    return session


# ── pure helpers ─────────────────────────────────────────────


class TestParseSSELine:
    def test_data_line(self) -> None:
        assert parse_sse_line('data: {"type": "complete"}') == {"type": "complete"}

    @pytest.mark.parametrize("line", [
        "",
        ": keepalive",
        "event: message",
        "data: {not json",
        "data: [1, 2]",
        'data:{"type": "complete"}',
    ])
    def test_other_lines_skipped(self, line: str) -> None:
        assert parse_sse_line(line) is None


class TestApplyCharacterUpdates:
    def test_removal_before_addition(self) -> None:
        character = CharacterState(inventory=["Sword", "Potion"])
        updated = apply_character_updates(
            character, {"inventory_changes": {"added": ["Sword"], "removed": ["Sword"]}}
        )
        assert updated.inventory == ["Potion", "Sword"]
        assert character.inventory == ["Sword", "Potion"]

    def test_removes_first_occurrence_only(self) -> None:
        character = CharacterState(inventory=["Potion", "Sword", "Potion"])
        updated = apply_character_updates(character, {"inventory_changes": {"removed": ["Potion"]}})
        assert updated.inventory == ["Sword", "Potion"]

    def test_missing_item_removal_ignored(self) -> None:
        character = CharacterState(inventory=["Sword"])
        updated = apply_character_updates(character, {"inventory_changes": {"removed": ["Axe"]}})
        assert updated.inventory == ["Sword"]

    def test_empty_changes_are_noop(self) -> None:
        character = CharacterState()
        assert apply_character_updates(character, {"inventory_changes": {}}) is character
        assert apply_character_updates(character, {"location": ""}) is character

    def test_hp_and_location(self) -> None:
        updated = apply_character_updates(CharacterState(), {"hp": -5, "location": "Durotar"})
        assert updated.hp == -5
        assert updated.location == "Durotar"


def test_history_and_recap_lines():
    action = NarrativeEntry(type="action", content="Draw sword")
    speech = NarrativeEntry(type="dialogue", content="Hold!", speaker="Guard")
    prose = NarrativeEntry(type="narrative", content="Wind howls.")
    assert history_line(action) == "> Draw sword"
    assert history_line(speech) == 'Guard: "Hold!"'
    assert history_line(prose) == "Wind howls."
    assert recap_line(action) == "Player: Draw sword"
    assert recap_line(speech) == 'Guard: "Hold!"'


# ── lifecycle ────────────────────────────────────────────────


class TestLifecycle:
    async def test_begin(self, session: GameSession) -> None:
        progress = session.progress
        assert progress.game_started and progress.scenario_selected and progress.character_selected
        assert [e.content for e in session.narrative] == ["You arrive at the gates of Orgrimmar."]
        assert progress.current_environment.description == "Eastern Kingdoms"
        assert session.current_response.content == "You arrive at the gates of Orgrimmar."

    async def test_begin_with_starting_location_and_no_intro(self, session: GameSession) -> None:
        session.begin("Durotar", CharacterState(name="Rexxar"), [], starting_location="Razor Hill")
        assert session.character.location == "Razor Hill"
        assert session.narrative[0].content == "Your adventure as Rexxar begins..."

    async def test_begin_is_persisted(self, session: GameSession, storage: Storage) -> None:
        assert storage.load_game() == session.progress

    async def test_back_to_scenario_selection(self, session: GameSession, storage: Storage) -> None:
        session.back_to_scenario_selection()
        loaded = storage.load_game()
        assert not loaded.game_started
        assert not loaded.scenario_selected
        assert loaded.narrative == []
        assert loaded.character.name == "Varok"

    async def test_reset(self, session: GameSession, storage: Storage) -> None:
        session.reset()
        assert not storage.game_file.exists()
        assert not session.progress.game_started
        assert session.current_response is None

    async def test_leave_stops_presenter(self, storage: Storage, client: httpx.AsyncClient) -> None:
        presenter = MagicMock()
        session = GameSession(storage, client, presenter=presenter)
        session.leave()
        presenter.stop.assert_called_once()


# ── turns ────────────────────────────────────────────────────


class TestTurn:
    async def test_dialogue_turn(self, session: GameSession, manager: MagicMock) -> None:
        assert await session.take_turn("Greet the Warchief")

        assert [e.type for e in session.narrative] == ["narrative", "action", "dialogue"]
        final = session.narrative[-1]
        assert final.content == "Lok'tar, friend."
        assert final.speaker == "Thrall"
        assert final.speaker_title == "Warchief"
        assert session.current_response == final
        assert not session.is_processing

        assert session.progress.current_environment.description == "Grommash Hold"
        assert session.progress.current_environment.npcs_present == ["Thrall"]
        assert [c.id for c in session.action_choices] == ["salute", "leave"]
        assert session.choices_actionable

    async def test_request_context(self, session: GameSession, manager: MagicMock) -> None:
        await session.take_turn("Greet the Warchief")
        context, action = manager.generate_response.call_args.args
        assert action == "Greet the Warchief"
        # history is taken before the action is appended
        assert context.narrative_history == ["You arrive at the gates of Orgrimmar."]
        assert context.scenario == "Orgrimmar"
        assert context.character.class_ == "Warrior"
        assert context.current_context == "Eastern Kingdoms"

    async def test_one_turn_in_flight(self, session: GameSession, manager: MagicMock) -> None:
        results = await asyncio.gather(session.take_turn("first"), session.take_turn("second"))
        assert results == [True, False]
        assert [e.content for e in session.narrative if e.type == "action"] == ["first"]
        assert sum(1 for e in session.narrative if e.type == "dialogue") == 1
        manager.generate_response.assert_awaited_once()

    async def test_character_updates_applied(self, session: GameSession, manager: MagicMock) -> None:
        manager.generate_response.return_value = validate_turn_response(_turn(
            character_updates={
                "hp": 60,
                "location": "Valley of Strength",
                "inventory_changes": {"added": ["Sword"], "removed": ["Sword"]},
            },
        ))
        await session.take_turn("Spar")
        assert session.character.hp == 60
        assert session.character.location == "Valley of Strength"
        assert session.character.inventory == ["Potion", "Sword"]

    async def test_empty_inventory_changes_noop(
        self, session: GameSession, manager: MagicMock
    ) -> None:
        manager.generate_response.return_value = validate_turn_response(
            _turn(character_updates={"inventory_changes": {}})
        )
        await session.take_turn("Wait")
        assert session.character.inventory == ["Sword", "Potion"]

    async def test_game_state_recorded(self, session: GameSession, manager: MagicMock) -> None:
        manager.generate_response.return_value = validate_turn_response(
            _turn(game_state={"status": "combat"})
        )
        await session.take_turn("Attack")
        assert session.game_state == {"status": "combat"}

    async def test_turn_persisted(
        self, session: GameSession, manager: MagicMock, storage: Storage
    ) -> None:
        await session.take_turn("Greet")
        loaded = storage.load_game()
        assert loaded.narrative == session.narrative
        assert loaded.action_choices == session.action_choices

    async def test_presenter_started_with_final_entry(
        self, storage: Storage, client: httpx.AsyncClient, manager: MagicMock
    ) -> None:
        presenter = MagicMock()
        session = GameSession(storage, client, presenter=presenter, action_hold=0, recap_delay=0)
        session.begin("Orgrimmar", CharacterState(), ["Intro"])
        await session.take_turn("Greet")
        presenter.start.assert_called_once_with(session.narrative[-1])


class TestTurnFailures:
    async def test_error_event(self, session: GameSession, manager: MagicMock) -> None:
        manager.generate_response.side_effect = RuntimeError("vendor exploded")
        assert await session.take_turn("Greet")

        assert session.current_response.type == "system"
        assert session.current_response.content == "Something went wrong: vendor exploded"
        assert not session.is_processing
        # the action stays in the log, nothing else is appended
        assert [e.type for e in session.narrative] == ["narrative", "action"]
        assert session.action_choices == []

    async def test_not_configured(self, session: GameSession) -> None:
        # no manager override: the server has no key to use
        await session.take_turn("Greet")
        assert session.current_response.type == "system"
        assert "API key" in session.current_response.content
        assert not session.is_processing

    async def test_transport_error(self, storage: Storage) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(refuse), base_url="http://test"
        ) as client:
            session = GameSession(storage, client, action_hold=0)
            session.begin("Orgrimmar", CharacterState(), ["Intro"])
            await session.take_turn("Greet")

        assert session.current_response.content == "Something went wrong. Please try again."
        assert not session.is_processing

    async def test_stream_without_terminal_event(self, storage: Storage) -> None:
        def truncated(request: httpx.Request) -> httpx.Response:
            body = 'data: {"type": "processing"}\n\ndata: {"type": "text_chunk", "text": "Hi"}\n\n'
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(truncated), base_url="http://test"
        ) as client:
            session = GameSession(storage, client, action_hold=0)
            session.begin("Orgrimmar", CharacterState(), ["Intro"])
            await session.take_turn("Greet")

        assert not session.is_processing
        assert session.choices_actionable
        assert [e.type for e in session.narrative] == ["narrative", "action"]

    async def test_malformed_events_skipped(self, storage: Storage) -> None:
        def noisy(request: httpx.Request) -> httpx.Response:
            body = "\n".join([
                "data: {broken",
                'data: {"type": "environment", "data": {}}',
                'data: {"type": "text_chunk", "text": "Still here", "isComplete": true}',
                'data: {"type": "complete"}',
            ])
            return httpx.Response(200, text=body)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(noisy), base_url="http://test"
        ) as client:
            session = GameSession(storage, client, action_hold=0, recap_delay=0)
            session.begin("Orgrimmar", CharacterState(), ["Intro"])
            await session.take_turn("Greet")
            await session.drain()

        assert session.narrative[-1].content == "Still here"
        assert session.progress.current_environment.description == "Eastern Kingdoms"


# ── story recap ──────────────────────────────────────────────


class TestStoryRecap:
    def _seed_actions(self, session: GameSession, count: int) -> None:
        for i in range(count):
            session.narrative.append(NarrativeEntry(type="action", content=f"step {i}"))

    async def test_not_due_before_two_actions(
        self, session: GameSession, manager: MagicMock
    ) -> None:
        await session.take_turn("Greet")
        await session.drain()
        assert session.progress.story_recap is None
        manager.generate_story_recap.assert_not_called()

    async def test_generated_after_second_action(
        self, session: GameSession, manager: MagicMock, storage: Storage
    ) -> None:
        self._seed_actions(session, 1)
        await session.take_turn("Greet")
        await session.drain()

        recap = session.progress.story_recap
        assert recap.content == "The hero came to Orgrimmar."
        assert recap.turn_count == 2
        assert storage.load_game().story_recap == recap

        context, prompt = manager.generate_story_recap.call_args.args
        assert "quest journal" in prompt
        assert "Player: Greet" in context.narrative_history[0]
        assert context.current_context == "Generate story recap"

    async def test_interval(self, session: GameSession, manager: MagicMock) -> None:
        self._seed_actions(session, 1)
        await session.take_turn("one")
        await session.drain()
        await session.take_turn("two")
        await session.drain()
        assert manager.generate_story_recap.await_count == 1

        self._seed_actions(session, 4)
        assert session.recap_due()
        await session.take_turn("seven")
        await session.drain()
        assert manager.generate_story_recap.await_count == 2
        assert session.progress.story_recap.turn_count == 8

    async def test_failure_stores_fallback(self, session: GameSession, manager: MagicMock) -> None:
        manager.generate_story_recap.side_effect = LLMError("HTTP 500")
        self._seed_actions(session, 2)
        assert await session.generate_story_recap()
        assert session.progress.story_recap.content == RECAP_FALLBACK
        assert not session.is_loading

    async def test_not_configured_stores_fallback(self, session: GameSession) -> None:
        self._seed_actions(session, 2)
        assert await session.generate_story_recap()
        assert session.progress.story_recap.content == RECAP_FALLBACK


# ── voice recommendation ─────────────────────────────────────


class TestRecommendVoice:
    LABELS = ["Samantha (en-US)", "Daniel (en-GB)"]

    async def test_llm_choice(self, session: GameSession, manager: MagicMock) -> None:
        assert await session.recommend_voice("Thrall", self.LABELS) == "Daniel (en-GB)"
        assert "Orgrimmar" in manager.generate_text.call_args.args[0]

    async def test_rule_fallback_without_provider(self, session: GameSession) -> None:
        assert await session.recommend_voice("Thrall", self.LABELS) == "Samantha (en-US)"

    async def test_server_unreachable(self, storage: Storage) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(refuse), base_url="http://test"
        ) as client:
            session = GameSession(storage, client)
            assert await session.recommend_voice("Thrall", self.LABELS) is None

    async def test_dialogue_speech_uses_server_recommendation(
        self, storage: Storage, client: httpx.AsyncClient, manager: MagicMock
    ) -> None:
        speaker = MagicMock()
        presenter = Presenter(
            typewriter_enabled=False,
            tts_enabled=True,
            speaker=speaker,
            voices=[Voice("Samantha", "en-US"), Voice("Daniel", "en-GB")],
        )
        session = GameSession(storage, client, presenter=presenter, action_hold=0, recap_delay=0)
        assert presenter.voice_selector is session.voice_selector

        session.begin("Orgrimmar", CharacterState(), ["Intro"])
        await session.take_turn("Greet the Warchief")
        await presenter.wait()
        await session.drain()

        assert speaker.speak.call_args.args[0].voice == Voice("Daniel", "en-GB")
        assert session.voice_selector.cache == {"Thrall": "Daniel"}
        manager.generate_text.assert_awaited_once()

        session.reset()
        assert presenter.voice_selector.cache == {}
