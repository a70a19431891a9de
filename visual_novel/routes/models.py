"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from visual_novel.models import Indicator, Transform


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateCharacter(_Body):
    name: str
    personality: str = ""
    visual_description: str = ""
    greeting: str | None = None
    emotions: list[str] | None = None
    sprites: dict[str, str] = {}
    scene_image_url: str | None = None
    transform: Transform | None = None
    indicator: Indicator | None = None
    system_instruction: str | None = None


class ChatBody(_Body):
    message: str


class EditMessageBody(_Body):
    text: str


class SystemInstructionBody(_Body):
    instruction: str | None = None


class IndicatorBody(_Body):
    value: float


class ExportBody(_Body):
    ids: list[str]
