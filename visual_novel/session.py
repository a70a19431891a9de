"""Conversation session: one active character's chat, kept consistent across
the in-memory message log, the stored history and the model-side context.

States:
  idle            ready for any transition
  awaiting_model  a model call is in flight; every other transition is rejected
  error           a model call just failed and is being recorded as a system
                  message; returns to idle before the call returns

Transitions:
  select_character          load the stored log, or seed it with the greeting
  send(text)                user message stored first, then the model reply
  respond()                 model reply to a trailing, unanswered user message
  regenerate()              drop the last reply, then respond() again
  edit_message(id, text)    keep the log up to and including id, with new text
  delete_message(id)        keep the log strictly before id
  new_chat()                replace the log with a fresh greeting
  update_system_instruction persist the instruction, then new_chat()
  set_indicator(value)      manual override; log untouched, context rebuilt
  save_transform(transform) sprite placement only

Every log change is written to storage before it replaces self.messages, so a
StorageError leaves memory matching what is on disk. After any rollback the
model context is rebuilt from the log so the model forgets discarded turns.
"""

from __future__ import annotations

import logging
from enum import Enum

from visual_novel.characters import CharacterRegistry, clamp_indicator
from visual_novel.errors import ModelError, PreconditionError, StorageError
from visual_novel.llm import ConversationContext, ModelClient, Turn
from visual_novel.models import Character, Indicator, Message, Transform
from visual_novel.prompts import LiteralTemplateEngine, TemplateEngine, render_system_instruction
from visual_novel.replies import Fallback, ParseResult, parse_reply
from visual_novel.storage import Storage
from visual_novel.suggestions import suggest_replies, synthesize_greeting

logger = logging.getLogger(__name__)

MODEL_ERROR_TEXT = "Sorry, I encountered an error. Please try again."


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    ERROR = "error"


def history_turns(messages: list[Message]) -> list[Turn]:
    """Map user/ai messages to model turns, in order. System notes are dropped."""
    return [
        Turn("user" if m.sender == "user" else "model", m.text)
        for m in messages
        if m.sender in ("user", "ai")
    ]


class ConversationSession:
    def __init__(
        self,
        storage: Storage,
        model_client: ModelClient,
        *,
        registry: CharacterRegistry | None = None,
        user_name: str = "User",
        user_personality: str = "",
        template_engine: TemplateEngine | None = None,
    ) -> None:
        self.storage = storage
        self.registry = registry or CharacterRegistry(storage)
        self.model_client = model_client
        self.user_name = user_name
        self.user_personality = user_personality
        self.template_engine = template_engine or LiteralTemplateEngine()

        self.state = SessionState.IDLE
        self.character: Character | None = None
        self.messages: list[Message] = []
        self.system_instruction = ""
        self.context: ConversationContext | None = None
        self.last_parse: ParseResult | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Guards and helpers
    # ------------------------------------------------------------------

    def _require_idle(self) -> None:
        if self.state is not SessionState.IDLE:
            raise PreconditionError("Waiting for the model to reply")

    def _require_character(self) -> Character:
        if self.character is None:
            raise PreconditionError("No character selected")
        return self.character

    def _index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        raise PreconditionError(f"Message {message_id!r} not found")

    def _commit_log(self, messages: list[Message]) -> None:
        """Persist, then replace the in-memory log."""
        character = self._require_character()
        self.storage.save_chat(character.id, messages)
        self.messages = messages

    def _commit_character(self, character: Character) -> None:
        self.character = self.registry.save(character)

    def _rebuild_context(self, messages: list[Message] | None = None) -> None:
        """Fresh model context from the rendered instruction and the given log."""
        character = self._require_character()
        self.system_instruction = render_system_instruction(
            character, self.user_name, self.user_personality, self.template_engine
        )
        turns = history_turns(self.messages if messages is None else messages)
        self.context = self.model_client.create_context(self.system_instruction, turns)

    def _greeting_log(self, character: Character) -> list[Message]:
        text = character.greeting or synthesize_greeting(self.user_name)
        return [Message(sender="ai", text=text, emotion=character.default_emotion)]

    def _resolve_emotion(self, emotion: str | None) -> str:
        """Match a reply's emotion to a declared one; otherwise the default."""
        character = self._require_character()
        if emotion:
            for declared in character.emotions:
                if declared.lower() == emotion.strip().lower():
                    return declared
        return character.default_emotion

    def _apply_indicator(self, value: float) -> None:
        """Write a model-supplied indicator onto the stored record, so edits
        saved while the reply was pending are kept."""
        character = self.registry.get(self._require_character().id) or self.character
        clamped = clamp_indicator(value)
        if clamped == character.indicator.value:
            self.character = character
            return
        indicator = Indicator(name=character.indicator.name, value=clamped)
        self._commit_character(character.model_copy(update={"indicator": indicator}))
        logger.debug("Indicator for %s set to %d", character.id, clamped)

    async def _request_reply(self, user_text: str) -> Message:
        """Ask the model to answer user_text and record the outcome in the log.

        The user message must already be in the log.
        """
        character = self._require_character()
        self.state = SessionState.AWAITING_MODEL
        try:
            try:
                raw = await self.model_client.send_turn(self.context, user_text)
            except (ModelError, TimeoutError) as e:
                self.state = SessionState.ERROR
                self.last_error = str(e) or type(e).__name__
                logger.exception("Model call failed for %s: %s", character.id, self.last_error)
                note = Message(sender="system", text=f"{MODEL_ERROR_TEXT} ({self.last_error})")
                self._commit_log([*self.messages, note])
                return note

            result = parse_reply(raw)
            if isinstance(result, Fallback):
                logger.warning("Using fallback reply for %s: %s", character.id, result.reason)
            self.last_parse = result
            reply = result.reply

            message = Message(
                sender="ai", text=reply.dialogue, emotion=self._resolve_emotion(reply.emotion)
            )
            try:
                self._commit_log([*self.messages, message])
            except StorageError:
                # The model already has this turn; make it forget.
                self._rebuild_context()
                raise
            if reply.indicator_value is not None:
                self._apply_indicator(reply.indicator_value)
            return message
        finally:
            self.state = SessionState.IDLE

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def select_character(self, character_id: str) -> list[Message]:
        """Bind the session to a character, seeding its chat on first use."""
        self._require_idle()
        character = self.registry.get(character_id)
        if character is None:
            raise PreconditionError(f"Unknown character {character_id!r}")

        messages = self.storage.get_chat(character.id)
        if messages is None:
            messages = self._greeting_log(character)
            self.storage.save_chat(character.id, messages)

        self.character = character
        self.messages = messages
        self.last_parse = None
        self.last_error = None
        self._rebuild_context()
        logger.info("Session bound to character %s (%d messages)", character.id, len(messages))
        return self.messages

    async def send(self, text: str) -> Message:
        """Append a user message and the model's answer. Returns the answer,
        which is a system message if the model call failed."""
        if not text or not text.strip():
            raise PreconditionError("Cannot send an empty message")
        self._require_idle()
        self._require_character()

        self._commit_log([*self.messages, Message(sender="user", text=text)])
        return await self._request_reply(text)

    async def respond(self) -> Message:
        """Get a reply to the last message when it is an unanswered user message."""
        self._require_idle()
        self._require_character()
        if not self.messages or self.messages[-1].sender != "user":
            raise PreconditionError("The last message is not an unanswered user message")

        self._rebuild_context(self.messages[:-1])
        return await self._request_reply(self.messages[-1].text)

    async def regenerate(self) -> Message:
        """Replace the last reply with a fresh one for the same user message."""
        self._require_idle()
        self._require_character()
        if (
            len(self.messages) < 2
            or self.messages[-1].sender != "ai"
            or self.messages[-2].sender != "user"
        ):
            raise PreconditionError("Nothing to regenerate: the last reply does not answer a user message")

        # Only the reply is dropped; the user message stays stored throughout.
        self._commit_log(self.messages[:-1])
        return await self.respond()

    def edit_message(self, message_id: str, new_text: str) -> list[Message]:
        """Rewrite a message and discard everything after it."""
        self._require_idle()
        self._require_character()
        if not new_text or not new_text.strip():
            raise PreconditionError("Message text cannot be empty")

        index = self._index_of(message_id)
        edited = self.messages[index].model_copy(update={"text": new_text})
        self._commit_log([*self.messages[:index], edited])
        self._rebuild_context()
        return self.messages

    def delete_message(self, message_id: str) -> list[Message]:
        """Rewind to just before a message."""
        self._require_idle()
        self._require_character()

        index = self._index_of(message_id)
        self._commit_log(self.messages[:index])
        self._rebuild_context()
        return self.messages

    def new_chat(self) -> list[Message]:
        """Replace the whole history with a fresh greeting."""
        self._require_idle()
        character = self._require_character()

        # save_chat replaces the stored log in one write.
        self._commit_log(self._greeting_log(character))
        self.last_parse = None
        self._rebuild_context()
        return self.messages

    def update_system_instruction(self, instruction: str | None) -> list[Message]:
        """Store a custom instruction (None or blank restores the default) and
        start a new chat under it."""
        self._require_idle()
        character = self._require_character()

        instruction = instruction.strip() if instruction else ""
        self._commit_character(character.model_copy(update={"system_instruction": instruction or None}))
        return self.new_chat()

    def set_indicator(self, value: float) -> Character:
        """Manual override. The log is kept; the context is rebuilt so the
        model sees the new value."""
        self._require_idle()
        character = self._require_character()

        indicator = Indicator(name=character.indicator.name, value=clamp_indicator(value))
        self._commit_character(character.model_copy(update={"indicator": indicator}))
        self._rebuild_context()
        return self.character

    def save_transform(self, transform: Transform) -> Character:
        character = self._require_character()
        self._commit_character(character.model_copy(update={"transform": transform}))
        return self.character

    def reload_character(self) -> Character:
        """Pick up an edit made to the stored character record (name,
        personality, emotions...) without touching the log."""
        self._require_idle()
        character = self._require_character()
        reloaded = self.registry.get(character.id)
        if reloaded is None:
            raise PreconditionError(f"Character {character.id!r} no longer exists")
        self.character = reloaded
        self._rebuild_context()
        return reloaded

    def set_user(self, user_name: str, user_personality: str = "") -> None:
        """Apply changed user settings to subsequent turns."""
        self._require_idle()
        self.user_name = user_name
        self.user_personality = user_personality
        if self.character is not None:
            self._rebuild_context()

    async def suggest_replies(self) -> list[str]:
        """Two candidate user replies for the current conversation."""
        self._require_idle()
        character = self._require_character()
        return await suggest_replies(
            self.model_client, character, self.messages, self.user_name, self.user_personality
        )

    def close(self) -> None:
        """Unbind from the current character."""
        self._require_idle()
        self.character = None
        self.messages = []
        self.context = None
        self.system_instruction = ""
        self.last_parse = None
        self.last_error = None
