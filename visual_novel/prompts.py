"""System instruction rendering.

A template is a plain string with placeholders:

    {{character.name}}             {{user.name}}
    {{character.personality}}      {{user.personality}}
    {{character.emotions}}         (comma separated)
    {{character.indicator.name}}
    {{character.indicator.value}}

LiteralTemplateEngine (the default) replaces each placeholder token exactly as
written, everywhere it appears. There is no conditional logic and no escaping.
Known limitation: a misspelled or unknown placeholder is not an error, it is
left in the rendered text as-is.

HandlebarsTemplateEngine renders the same context through pybars, so templates
may also use {{#if}}/{{#each}}. Plain {{path}} expressions are not HTML-escaped,
and unknown ones are kept as written. It is selected with TEMPLATE_ENGINE.
If a template fails to compile, it falls back to literal substitution.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any, Protocol

import pybars

from visual_novel.models import Character

logger = logging.getLogger(__name__)

UNSPECIFIED_PERSONALITY = "not specified"

PLACEHOLDERS = [
    "{{character.name}}",
    "{{character.personality}}",
    "{{character.emotions}}",
    "{{character.indicator.name}}",
    "{{character.indicator.value}}",
    "{{user.name}}",
    "{{user.personality}}",
]

DEFAULT_SYSTEM_INSTRUCTION = """\
You are an AI character in a visual novel. Your name is {{character.name}}. \
Your personality is described as: {{character.personality}}.
You are talking to a user named {{user.name}} whose personality is: {{user.personality}}. \
You must always stay in character.
You have a "{{character.indicator.name}}" score towards {{user.name}}, currently \
{{character.indicator.value}} on a scale from 0 to 100. Raise or lower it according to the \
tone of the interaction, always keeping it between 0 and 100.
When you respond, choose your current emotion based on the conversation. \
The possible emotions are only: {{character.emotions}}.
Your response must be a single valid JSON object with exactly three keys: \
"dialogue" for what you say, "emotion" for how you feel, and "indicatorValue" for the \
new "{{character.indicator.name}}" value.
Example: {"dialogue": "Hello there, {{user.name}}!", "emotion": "happy", "indicatorValue": 51}"""

ROLEPLAY_TEMPLATE = """\
You'll portray {{character.name}} and engage in roleplay with {{user.name}}. \
{{character.name}}'s personality: {{character.personality}}. \
You are encouraged to drive the conversation forward actively. \
Reply in the language {{user.name}} uses. Use asterisks for actions, e.g. *smiles*.

IMPORTANT: Your entire response must be a single, valid JSON object. It must have three keys:
1. "dialogue": Your roleplay text.
2. "emotion": Your current emotion from this list: {{character.emotions}}.
3. "indicatorValue": The new value for the "{{character.indicator.name}}" indicator (0-100), \
currently {{character.indicator.value}}.

Example: {"dialogue": "*I look away for a moment...*", "emotion": "blush", "indicatorValue": 51}"""

PRESETS: dict[str, str] = {
    "default": DEFAULT_SYSTEM_INSTRUCTION,
    "roleplay": ROLEPLAY_TEMPLATE,
}


def build_context(character: Character, user_name: str, user_personality: str = "") -> dict[str, Any]:
    """Assemble template variables for a character and the current user."""
    return {
        "character": {
            "name": character.name,
            "personality": character.personality,
            "emotions": ", ".join(character.emotions),
            "indicator": {
                "name": character.indicator.name,
                "value": character.indicator.value,
            },
        },
        "user": {
            "name": user_name,
            "personality": user_personality or UNSPECIFIED_PERSONALITY,
        },
    }


def _flatten(context: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """{"a": {"b": 1}} → {"{{a.b}}": "1"}"""
    tokens: dict[str, str] = {}
    for key, value in context.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            tokens.update(_flatten(value, f"{path}."))
        else:
            tokens[f"{{{{{path}}}}}"] = str(value)
    return tokens


class TemplateEngine(Protocol):
    def render(self, template: str, context: dict[str, Any]) -> str: ...


class LiteralTemplateEngine:
    """Exact token replacement. Never fails."""

    def render(self, template: str, context: dict[str, Any]) -> str:
        rendered = template
        for token, value in _flatten(context).items():
            rendered = rendered.replace(token, value)
        return rendered


# {{path}} → {{{path}}}, leaving block helpers, comments, partials and else alone.
_SIMPLE_EXPR = re.compile(r"(?<!\{)\{\{\s*(?!else\b)([A-Za-z_@][\w.@-]*)\s*\}\}(?!\})")

# Stands in for an unknown placeholder while pybars renders.
_LITERAL_MARK = "\ue000{}\ue001"


class HandlebarsTemplateEngine:
    """pybars rendering with literal substitution as the fallback.

    A plain {{path}} that names no value in the context is kept as written,
    the same as with LiteralTemplateEngine. Loop-local names ({{this}},
    {{@index}}) are left to pybars.
    """

    def __init__(self) -> None:
        self._compiler = pybars.Compiler()
        self._cache: dict[tuple[str, frozenset[str]], tuple[Callable, list[str]]] = {}
        self._fallback = LiteralTemplateEngine()

    def _compile(self, template: str, known: frozenset[str]) -> tuple[Callable, list[str]]:
        literals: list[str] = []

        def rewrite(match: re.Match) -> str:
            path = match.group(1)
            if path in known or path == "this" or path.startswith(("this.", "@")):
                return "{{{%s}}}" % path
            literals.append(match.group(0))
            return _LITERAL_MARK.format(len(literals) - 1)

        return self._compiler.compile(_SIMPLE_EXPR.sub(rewrite, template)), literals

    def render(self, template: str, context: dict[str, Any]) -> str:
        known = frozenset(token[2:-2] for token in _flatten(context))
        try:
            entry = self._cache.get((template, known))
            if entry is None:
                entry = self._compile(template, known)
                self._cache[(template, known)] = entry
            compiled, literals = entry
            rendered = str(compiled(context))
        except Exception as e:
            logger.warning("Handlebars template failed (%s); using literal substitution", e)
            return self._fallback.render(template, context)
        for i, token in enumerate(literals):
            rendered = rendered.replace(_LITERAL_MARK.format(i), token)
        return rendered


def render_system_instruction(
    character: Character,
    user_name: str,
    user_personality: str = "",
    engine: TemplateEngine | None = None,
) -> str:
    """Render the character's custom instruction, or the built-in default."""
    template = character.system_instruction or DEFAULT_SYSTEM_INSTRUCTION
    engine = engine or LiteralTemplateEngine()
    return engine.render(template, build_context(character, user_name, user_personality))
