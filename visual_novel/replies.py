"""Model reply parsing.

parse_reply() turns raw model text into a ModelReply:

  1. strip surrounding whitespace
  2. strip a markdown code fence (``` or ```json etc.)
  3. parse JSON
  4. validate: "dialogue" and "emotion" must be strings; "indicatorValue" is
     kept only if it is a finite number, otherwise treated as absent

Any failure yields Fallback(FALLBACK_REPLY) instead of raising. Success yields
Ok(reply). The function is pure and total.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

FALLBACK_DIALOGUE = "I'm sorry, I had trouble forming a response."
FALLBACK_EMOTION = "sad"

_FENCE = re.compile(r"^```[\w+-]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)


class ModelReply(BaseModel):
    """The structured object the model is asked to return."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    dialogue: StrictStr
    emotion: StrictStr
    indicator_value: float | None = Field(default=None, alias="indicatorValue")

    @field_validator("indicator_value", mode="before")
    @classmethod
    def _numbers_only(cls, value: Any) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value


FALLBACK_REPLY = ModelReply(dialogue=FALLBACK_DIALOGUE, emotion=FALLBACK_EMOTION)


@dataclass(frozen=True)
class Ok:
    reply: ModelReply


@dataclass(frozen=True)
class Fallback:
    reply: ModelReply
    reason: str


ParseResult = Ok | Fallback


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, with or without a language tag."""
    text = text.strip()
    match = _FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text


def parse_reply(raw: str) -> ParseResult:
    """Parse raw model output. Never raises."""
    try:
        data = json.loads(strip_code_fence(raw or ""))
    except (ValueError, TypeError, AttributeError, RecursionError) as e:
        logger.warning("Model reply is not valid JSON: %r", raw)
        return Fallback(FALLBACK_REPLY, f"invalid JSON: {e}")

    if not isinstance(data, dict):
        logger.warning("Model reply is not a JSON object: %r", raw)
        return Fallback(FALLBACK_REPLY, f"expected an object, got {type(data).__name__}")

    try:
        return Ok(ModelReply.model_validate(data))
    except PydanticValidationError as e:
        logger.warning("Model reply failed validation: %s", e)
        return Fallback(FALLBACK_REPLY, f"invalid fields: {e.error_count()} error(s)")
