import json

import pytest

from visual_novel.characters import CharacterRegistry
from visual_novel.errors import ModelError
from visual_novel.llm import ConversationContext, Turn
from visual_novel.models import Character, Indicator
from visual_novel.session import ConversationSession
from visual_novel.storage import Storage


class StubModelClient:
    """Scripted model client.

    Each send_turn()/complete() pops the next entry from `responses`: a string
    is returned as the raw reply, an exception instance is raised. Every call
    is recorded so tests can check what the model saw.
    """

    def __init__(self, responses: list | None = None) -> None:
        self.responses = list(responses or [])
        self.contexts: list[ConversationContext] = []
        self.sent: list[tuple[list[Turn], str]] = []
        self.completions: list[tuple[str, str]] = []

    def create_context(self, system_instruction: str, prior_turns: list[Turn]) -> ConversationContext:
        context = ConversationContext(system_instruction=system_instruction, turns=list(prior_turns))
        self.contexts.append(context)
        return context

    def _next(self) -> str:
        if not self.responses:
            raise ModelError("StubModelClient has no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def send_turn(self, context: ConversationContext, user_text: str) -> str:
        self.sent.append((list(context.turns), user_text))
        text = self._next()
        context.turns.extend([Turn("user", user_text), Turn("model", text)])
        return text

    async def complete(self, system_instruction: str, prompt: str) -> str:
        self.completions.append((system_instruction, prompt))
        return self._next()


def reply(dialogue: str, emotion: str = "neutral", indicator: float | None = None) -> str:
    """Raw model text for a well-formed reply."""
    data: dict = {"dialogue": dialogue, "emotion": emotion}
    if indicator is not None:
        data["indicatorValue"] = indicator
    return json.dumps(data)


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "data")


@pytest.fixture
def registry(storage):
    return CharacterRegistry(storage)


@pytest.fixture
def character(registry):
    return registry.save(Character(
        id="mio",
        name="Mio",
        personality="Shy librarian who loves old maps.",
        greeting="Oh, h-hello. Are you looking for a book?",
        emotions=["neutral", "happy", "sad"],
        sprites={"neutral": "mio-neutral.png", "happy": "mio-happy.png"},
        indicator=Indicator(name="Affection", value=50),
    ))


@pytest.fixture
def model():
    return StubModelClient()


@pytest.fixture
def session(storage, registry, model, character):
    s = ConversationSession(storage, model, registry=registry, user_name="Ren")
    s.select_character(character.id)
    return s
