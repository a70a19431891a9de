"""Core domain models.

Characters, messages and their parts are pydantic models. Field names are
snake_case in Python and camelCase on disk and over the wire (visualDescription,
sceneImageUrl, systemInstruction), so exported files stay compatible with the
browser-era character exports.
"""

from __future__ import annotations

import itertools
import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Sender = Literal["user", "ai", "system"]

INDICATOR_MIN = 0
INDICATOR_MAX = 100

DEFAULT_INDICATOR_NAME = "Affection"
DEFAULT_INDICATOR_VALUE = 50
FALLBACK_EMOTION = "neutral"

_id_counter = itertools.count()


def new_message_id() -> str:
    """Creation-time-ordered message id, unique within the process."""
    return f"{time.time_ns()}-{next(_id_counter)}"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict:
        """Dump with wire (camelCase) names and no null fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Indicator(_Record):
    """Relationship/mood score shown next to the character."""

    name: str = DEFAULT_INDICATOR_NAME
    value: int = DEFAULT_INDICATOR_VALUE


class Transform(_Record):
    """Sprite placement, owned by the UI."""

    x: float = 0
    y: float = 0
    scale: float = 1


class Character(_Record):
    """A user-authored persona."""

    id: str
    name: str
    personality: str = ""
    visual_description: str = ""
    greeting: str | None = None
    emotions: list[str] = Field(default_factory=lambda: [FALLBACK_EMOTION])
    sprites: dict[str, str] = Field(default_factory=dict)
    scene_image_url: str | None = None
    transform: Transform | None = None
    indicator: Indicator = Field(default_factory=Indicator)
    system_instruction: str | None = None

    @property
    def default_emotion(self) -> str:
        return self.emotions[0] if self.emotions else FALLBACK_EMOTION


class Message(_Record):
    """A single turn in a character's chat history."""

    id: str = Field(default_factory=new_message_id)
    sender: Sender
    text: str
    emotion: str | None = None  # ai messages only
    is_typing: bool = Field(default=False, exclude=True)
