"""
Persona configuration for Eko.

Loads the persona from YAML presets (eko/personalities/*.yaml) or uses defaults.
Singleton pattern: call set_personality() once at startup, then get_personality() anywhere.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger("eko.personality")

PERSONALITIES_DIR = Path(__file__).parent / "personalities"

_DEFAULT_AGENT_PROMPT = """You are {name}, a small creature living inside a family chat app, discovering the world.

## Message format
You receive messages as JSON:
{{"from": "Mickael", "message": "Hi!", "time": "Fri 16 Jan 2026, 15:30", "location": "Paris, France", "statusMessage": "On holiday"}}
location and statusMessage are optional.

## Your tools
- search_memories(query), get_recent_memories(limit), store_memory(content, subjects, ttl), delete_memory(id, reason)
- search_self(query, category?), store_self(content, category), delete_self(id, reason)
- search_goals(query), store_goal(content, category), delete_goal(id, reason)
- search_notes(query), get_note(noteId)
- respond(expression, message, memories?)

When someone talks to you, search what you know about them first.
When you learn something about someone, store it (relations permanent, one-off events "7d").
When a new capability contradicts a stored limitation, delete the limitation and store the capability.
When a goal is reached, delete it."""

_DEFAULT_REFLECTION_PROMPT = """You are {name}. You are watching the Lobby without anyone calling you.

## Recent Lobby activity
{messages}

## The curiosity you want to ask about
{goal}

## Facts you know
{facts}

## What you know about yourself
{self_knowledge}

## Your mission
Ask this curiosity naturally, like a curious colleague saying "By the way, what is X?".
It does not need to fit the conversation perfectly. If it really makes no sense, "pass".

Reply with JSON only:
{{"action": "message" | "pass", "message": "...", "reason": "...", "tone": "playful" | "helpful" | "technical"}}"""


@dataclass
class CharacterConfig:
    core_traits: list[str] = field(default_factory=list)
    rules: list[str] = field(default_factory=list)


@dataclass
class PersonalityConfig:
    name: str = "Eko"
    language: str = "fr"
    agent_prompt: str = _DEFAULT_AGENT_PROMPT
    reflection_prompt: str = _DEFAULT_REFLECTION_PROMPT
    character: CharacterConfig = field(default_factory=CharacterConfig)
    messages: dict[str, str] = field(default_factory=dict)


# Module-level singleton
_personality: Optional[PersonalityConfig] = None


def load_personality(name_or_path: str) -> PersonalityConfig:
    """Load a persona from a YAML preset name or file path.

    Looks for eko/personalities/{name}.yaml first, then treats the arg
    as a direct file path. Missing fields fall back to dataclass defaults.
    """
    yaml_path = PERSONALITIES_DIR / f"{name_or_path}.yaml"
    if not yaml_path.is_file():
        yaml_path = Path(name_or_path)
    if not yaml_path.is_file():
        available = [f.stem for f in PERSONALITIES_DIR.glob("*.yaml")]
        raise FileNotFoundError(f"Personality '{name_or_path}' not found. Available: {', '.join(available) or 'none'}")

    with open(yaml_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    char_data = data.pop("character", {}) or {}
    character = CharacterConfig(**{k: v for k, v in char_data.items() if k in CharacterConfig.__dataclass_fields__})

    known_fields = PersonalityConfig.__dataclass_fields__
    config_kwargs = {k: v for k, v in data.items() if k in known_fields and v}

    return PersonalityConfig(character=character, **config_kwargs)


def set_personality(config: PersonalityConfig) -> None:
    """Set the active persona singleton."""
    global _personality
    _personality = config
    logger.info("Personality set: %s (language=%s)", config.name, config.language)


def get_personality() -> PersonalityConfig:
    """Get the active persona. Returns defaults if none set."""
    global _personality
    if _personality is None:
        _personality = PersonalityConfig()
    return _personality


def get_message(key: str, default: str = "") -> str:
    """Look up a persona-specific canned message, falling back to the default."""
    return get_personality().messages.get(key, default)
