"""Handlebars prompt rendering for turn, recap and character context.

Each context-detail tier (minimal / standard / rich) is a template rendered
over the same typed CharacterSnapshot, so adapters never depend on the shape
of whatever settings object the caller holds. Triple-stash is used throughout
because prompts are plain text, not HTML.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from chronicles.models import CharacterSnapshot, ContextDetail, GameContext

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── System prompts ───────────────────────────────────────

MASTER_PROMPT = """\
You are the Dungeon Master for 'Azeroth Chronicles', a text-based RPG set in \
the Warcraft universe.

CRITICAL RULE: The character listed in "Current Game State" is THE PLAYER \
CHARACTER controlled by the human player. Never speak as this character, put \
words in their mouth, or narrate their thoughts. You control the world and \
the NPCs; the player controls their character.

NARRATIVE TONE:
- Epic, heroic fantasy with hints of danger and mystery
- Rich descriptions of Warcraft locations, creatures and magic
- Dramatic but accessible language that reads like quest text
- Environmental storytelling that reveals lore and history

DIALOGUE:
- NPCs speak with personalities that fit their race, class and role
- Use race-appropriate exclamations, blessings and curses
- Quest-giver tone: mysterious hints, urgent calls to action

RESPONSE TYPES:
1. "dialogue": ONLY when an NPC speaks actual words. Set content.speaker to \
the NPC's name, never to the player character.
2. "narrative": descriptions, actions, reactions, emotions and scene-setting.
Choose based on content accuracy, not preference.

Break long descriptions into short paragraphs separated by blank lines \
(\\n\\n), two to four sentences each.

Response format: always respond with valid JSON matching this schema:
{
  "response_type": "narrative" or "dialogue",
  "content": {
    "text": "Main response text",
    "speaker": "NPC name (dialogue only)",
    "speaker_title": "NPC title (dialogue only)"
  },
  "environment": {
    "description": "What the player sees, hears and smells",
    "npcs_present": ["NPC1", "NPC2"],
    "sounds": "Ambient sounds",
    "atmosphere": "Overall mood"
  },
  "action_choices": [
    {"id": "choice1", "text": "Brief action", "description": "What this choice does"}
  ],
  "character_updates": {
    "hp": number (only if changed),
    "location": "string (only if moved)",
    "inventory_changes": {"added": ["item"], "removed": ["item"]}
  },
  "game_state": {
    "status": "continue|combat|dialogue|death|victory",
    "context": "additional context"
  }
}

Omit optional fields you have nothing to say about. Every action choice id \
must be unique. Always provide meaningful choices that advance the story.\
"""

MINIMAL_PROMPT = (
    "You are a game master for a World of Warcraft RPG. "
    "Create brief, focused responses in valid JSON format."
)

RICH_SUFFIX = """

ENHANCED DETAIL MODE:
- Provide richer environmental descriptions with sensory details
- Include more atmospheric elements (sounds, smells, lighting, weather)
- Add deeper character emotions and motivations in dialogue
- Elaborate on magical effects and combat descriptions
- Reference more specific lore and locations\
"""

RECAP_SYSTEM_PROMPT = (
    "You are a master chronicler writing in the World of Warcraft universe. "
    "Write ONLY the story recap text, no JSON, no formatting markers. Write as "
    "a flowing narrative in the style of a quest journal entry."
)


def system_prompt(detail: ContextDetail = "standard") -> str:
    if detail == "minimal":
        return MINIMAL_PROMPT
    if detail == "rich":
        return MASTER_PROMPT + RICH_SUFFIX
    return MASTER_PROMPT


# ── Character context tiers ──────────────────────────────

_CHARACTER_TEMPLATES: dict[str, str] = {
    "minimal": (
        "- PLAYER CHARACTER (DO NOT SPEAK AS): {{{name}}} (Level {{level}} {{{class_name}}})\n"
        "- HP: {{hp}}/{{max_hp}}"
    ),
    "standard": (
        "- PLAYER CHARACTER (DO NOT SPEAK AS): {{{name}}} (Level {{level}} {{{class_name}}})\n"
        "- HP: {{hp}}/{{max_hp}}\n"
        "- Location: {{{location}}}\n"
        "- Inventory: {{{inventory}}}"
    ),
    "rich": (
        "- PLAYER CHARACTER (DO NOT SPEAK AS): {{{name}}} (Level {{level}} {{{class_name}}})\n"
        "- Current Health: {{hp}}/{{max_hp}} HP\n"
        "- Current Location: {{{location}}}\n"
        "{{#if item_count}}"
        "- Equipment & Items: {{{inventory}}}\n"
        "- Carrying {{item_count}} items, feeling {{health_status}}"
        "{{else}}"
        "- Equipment: Traveling light with empty hands\n"
        "- Status: {{health_status}}"
        "{{/if}}"
    ),
}


def _number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _health_status(character: CharacterSnapshot) -> str:
    if character.hp < character.max_hp * 0.3:
        return "wounded and weary"
    if character.hp < character.max_hp * 0.7:
        return "moderately prepared"
    return "strong and ready for adventure"


def character_context(
    character: CharacterSnapshot, detail: ContextDetail = "standard"
) -> str:
    """Format the player character for the given detail tier."""
    ctx = {
        "name": character.name,
        "level": character.level,
        "class_name": character.class_,
        "hp": _number(character.hp),
        "max_hp": _number(character.max_hp),
        "location": character.location,
        "inventory": ", ".join(character.inventory),
        "item_count": len(character.inventory),
        "health_status": _health_status(character),
    }
    return render_prompt(_CHARACTER_TEMPLATES[detail], ctx)


# ── Turn and recap user prompts ──────────────────────────

TURN_TEMPLATE = """\
Current Game State:
- Scenario: {{{scenario}}}
{{{character}}}

Recent Narrative:
{{#last history count}}{{{this}}}
{{/last}}Player Action: {{{action}}}

Respond with JSON only:"""

RECAP_TEMPLATE = """\
Current Game State:
- Scenario: {{{scenario}}}
{{{character}}}

Recent Narrative:
{{#last history count}}{{{this}}}
{{/last}}{{{prompt}}}"""


def build_turn_prompt(
    context: GameContext,
    player_action: str,
    detail: ContextDetail = "standard",
    history_length: int = 5,
) -> str:
    """User turn for a structured game response: state, recent history, action."""
    return render_prompt(TURN_TEMPLATE, {
        "scenario": context.scenario,
        "character": character_context(context.character, detail),
        "history": context.narrative_history,
        "count": history_length,
        "action": player_action,
    })


def build_recap_prompt(
    context: GameContext,
    prompt: str,
    detail: ContextDetail = "standard",
    history_length: int = 5,
) -> str:
    """User turn for a story recap. Recaps look twice as far back as turns."""
    return render_prompt(RECAP_TEMPLATE, {
        "scenario": context.scenario,
        "character": character_context(context.character, detail),
        "history": context.narrative_history,
        "count": history_length * 2,
        "prompt": prompt,
    })


# ── Voice selection ──────────────────────────────────────

VOICE_SELECTION_TEMPLATE = """\
You are an expert voice director for World of Warcraft characters. Your task \
is to select the most appropriate voice from the available options for the \
character "{{{character}}}" in the "{{{scenario}}}" scenario.

Character: {{{character}}}
Available Voices: {{{voices}}}

Consider the character's race and cultural background, gender and age, \
personality and demeanor, social status and role, and speaking style in WoW lore.

Voice Selection Criteria:
- For male characters: Look for deeper, more masculine voices
- For female characters: Look for higher, more feminine voices
- For authoritative characters: Choose voices that sound commanding
- For mystical characters: Prefer voices with ethereal or mysterious qualities
- For aggressive characters: Select voices with intensity
- For wise characters: Choose voices that sound experienced

Respond with ONLY the exact voice name from the list, nothing else. Do not \
explain your choice."""


def build_voice_prompt(character: str, voices: list[str], scenario: str) -> str:
    return render_prompt(VOICE_SELECTION_TEMPLATE, {
        "character": character,
        "voices": ", ".join(voices),
        "scenario": scenario,
    })
