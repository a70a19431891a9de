"""One-shot generation outside the chat context.

suggest_replies: the model impersonates the user and proposes two lines.
generate_greeting: an opening line for a character created without one.

Both are total: a model failure or an unusable reply gives fixed text.
"""

from __future__ import annotations

import json
import logging

from visual_novel.errors import ModelError
from visual_novel.llm import ModelClient
from visual_novel.models import Character, Message
from visual_novel.prompts import UNSPECIFIED_PERSONALITY
from visual_novel.replies import strip_code_fence

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 6
FALLBACK_SUGGESTIONS = ["Let's try something else.", "What should I say?"]

_INSTRUCTION = """\
You are an AI assistant helping a user roleplay. Your task is to impersonate the user \
and suggest two different responses for them to say next.
The user's name is "{user_name}" and their personality is: {user_personality}.
They are talking to "{character_name}" whose personality is: {character_personality}.
Based on the recent chat history, generate two distinct, creative, and in-character \
responses from {user_name}'s perspective. The responses should be concise and sound \
like natural dialogue.

Recent Chat History:
{history}

Your response must be a valid JSON array containing exactly two strings. \
Example: ["That sounds interesting!", "I'm not so sure about that."]"""


def build_instruction(
    character: Character, messages: list[Message], user_name: str, user_personality: str = ""
) -> str:
    lines = []
    for m in messages[-HISTORY_WINDOW:]:
        if m.sender == "system":
            continue
        speaker = character.name if m.sender == "ai" else user_name
        lines.append(f"{speaker}: {m.text}")
    return _INSTRUCTION.format(
        user_name=user_name,
        user_personality=user_personality or UNSPECIFIED_PERSONALITY,
        character_name=character.name,
        character_personality=character.personality,
        history="\n".join(lines),
    )


def parse_suggestions(raw: str) -> list[str] | None:
    """Return the first two strings of a JSON array, or None if malformed."""
    try:
        data = json.loads(strip_code_fence(raw))
    except (ValueError, TypeError, AttributeError, RecursionError):
        return None
    if isinstance(data, list) and len(data) >= 2 and all(isinstance(s, str) for s in data):
        return data[:2]
    return None


async def suggest_replies(
    model_client: ModelClient,
    character: Character,
    messages: list[Message],
    user_name: str,
    user_personality: str = "",
) -> list[str]:
    """Two suggested user replies. Falls back to fixed suggestions on any failure."""
    instruction = build_instruction(character, messages, user_name, user_personality)
    try:
        raw = await model_client.complete(instruction, "Generate two responses.")
    except (ModelError, TimeoutError) as e:
        logger.warning("Suggestion request failed: %s", e)
        return list(FALLBACK_SUGGESTIONS)

    suggestions = parse_suggestions(raw)
    if suggestions is None:
        logger.warning("Suggestion reply was not a list of two strings: %r", raw)
        return list(FALLBACK_SUGGESTIONS)
    return suggestions


_GREETING_INSTRUCTION = """\
You are roleplaying a character with this personality: {character_personality}.
You are greeting a user named {user_name}, whose personality is: {user_personality}.
Generate a short, friendly, in-character greeting directed at the user.
Do not add any quotation marks or extra formatting. Just provide the line of dialogue."""


def synthesize_greeting(user_name: str) -> str:
    return f"Hello {user_name}, it's nice to meet you."


async def generate_greeting(
    model_client: ModelClient,
    character: Character,
    user_name: str,
    user_personality: str = "",
) -> str:
    """A model-written opening line, or synthesize_greeting() on failure."""
    instruction = _GREETING_INSTRUCTION.format(
        character_personality=character.personality or UNSPECIFIED_PERSONALITY,
        user_name=user_name,
        user_personality=user_personality or UNSPECIFIED_PERSONALITY,
    )
    try:
        raw = await model_client.complete(instruction, f"Generate a greeting for {user_name}.")
    except (ModelError, TimeoutError) as e:
        logger.warning("Greeting request failed: %s", e)
        return synthesize_greeting(user_name)

    greeting = raw.strip().strip('"').strip()
    return greeting or synthesize_greeting(user_name)
