"""Tests for visual_novel.session.ConversationSession."""

import asyncio

import pytest

from conftest import StubModelClient, reply
from visual_novel.errors import ModelError, PreconditionError, StorageError
from visual_novel.llm import Turn
from visual_novel.models import Character, Message, Transform
from visual_novel.replies import Fallback, Ok
from visual_novel.session import (
    MODEL_ERROR_TEXT,
    ConversationSession,
    SessionState,
    history_turns,
    synthesize_greeting,
)

GREETING = "Oh, h-hello. Are you looking for a book?"


def _texts(messages):
    return [(m.sender, m.text) for m in messages]


def _gate(model, raw):
    """Make the model hold its reply until the returned event is set."""
    release = asyncio.Event()

    async def send_turn(context, user_text):
        model.sent.append((list(context.turns), user_text))
        await release.wait()
        return raw

    model.send_turn = send_turn
    return release


async def _until_awaiting(session):
    while session.state is not SessionState.AWAITING_MODEL:
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Select character
# ---------------------------------------------------------------------------

class TestSelect:
    def test_seeds_greeting(self, session, storage):
        assert _texts(session.messages) == [("ai", GREETING)]
        assert session.messages[0].emotion == "neutral"
        assert _texts(storage.get_chat("mio")) == [("ai", GREETING)]
        assert session.state is SessionState.IDLE

    def test_builds_context_from_log(self, session, model):
        assert session.context is model.contexts[-1]
        assert session.context.turns == [Turn("model", GREETING)]
        assert "Mio" in session.system_instruction
        assert "Ren" in session.system_instruction
        assert "neutral, happy, sad" in session.system_instruction

    def test_synthesizes_greeting_when_missing(self, storage, registry, model):
        registry.save(Character(id="quiet", name="Quiet"))
        s = ConversationSession(storage, model, registry=registry, user_name="Ren")
        s.select_character("quiet")
        assert _texts(s.messages) == [("ai", synthesize_greeting("Ren"))]
        assert s.messages[0].text == "Hello Ren, it's nice to meet you."

    def test_loads_existing_history(self, storage, registry, model, character):
        storage.save_chat("mio", [Message(sender="ai", text="hi"), Message(sender="user", text="yo")])
        s = ConversationSession(storage, model, registry=registry)
        s.select_character("mio")
        assert _texts(s.messages) == [("ai", "hi"), ("user", "yo")]
        assert s.context.turns == [Turn("model", "hi"), Turn("user", "yo")]

    def test_unknown_character(self, storage, registry, model):
        s = ConversationSession(storage, model, registry=registry)
        with pytest.raises(PreconditionError):
            s.select_character("ghost")
        assert s.character is None

    def test_custom_instruction_rendered(self, storage, registry, model, character):
        registry.save(character.model_copy(update={"system_instruction": "I am {{character.name}}."}))
        s = ConversationSession(storage, model, registry=registry)
        s.select_character("mio")
        assert s.system_instruction == "I am Mio."


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------

class TestSend:
    async def test_reply_appended_and_indicator_updated(self, session, model, registry, storage):
        model.responses = [reply("hey!", "happy", 55)]
        message = await session.send("hi")

        assert message.sender == "ai"
        assert message.text == "hey!"
        assert message.emotion == "happy"
        assert _texts(session.messages) == [("ai", GREETING), ("user", "hi"), ("ai", "hey!")]
        assert session.character.indicator.value == 55
        assert registry.get("mio").indicator.value == 55
        assert _texts(storage.get_chat("mio")) == _texts(session.messages)
        assert isinstance(session.last_parse, Ok)

    async def test_malformed_reply_uses_fallback(self, session, model):
        model.responses = [reply("hey!", "happy", 55), "not json"]
        await session.send("hi")
        message = await session.send("and now?")

        assert message.sender == "ai"
        assert message.text == "I'm sorry, I had trouble forming a response."
        assert message.emotion == "sad"
        assert session.messages[-1] == message
        assert session.character.indicator.value == 55
        assert isinstance(session.last_parse, Fallback)

    async def test_indicator_clamped(self, session, model, registry):
        model.responses = [reply("wow", "happy", 180)]
        await session.send("hi")
        assert registry.get("mio").indicator.value == 100

    async def test_indicator_absent_keeps_value(self, session, model):
        model.responses = [reply("hm", "neutral")]
        await session.send("hi")
        assert session.character.indicator.value == 50

    async def test_unknown_emotion_falls_back_to_first_declared(self, session, model):
        model.responses = [reply("hm", "furious")]
        message = await session.send("hi")
        assert message.emotion == "neutral"

    async def test_emotion_match_is_case_insensitive(self, session, model):
        model.responses = [reply("yay", "HAPPY")]
        assert (await session.send("hi")).emotion == "happy"

    async def test_model_sees_history(self, session, model):
        model.responses = [reply("one"), reply("two")]
        await session.send("first")
        await session.send("second")
        prior, text = model.sent[-1]
        assert text == "second"
        assert [t.role for t in prior] == ["model", "user", "model"]

    async def test_user_message_persisted_before_model_call(self, session, model, storage):
        seen = {}

        async def send_turn(context, user_text):
            seen["stored"] = _texts(storage.get_chat("mio"))
            seen["state"] = session.state
            return reply("ok")

        model.send_turn = send_turn
        await session.send("hi")
        assert seen["stored"] == [("ai", GREETING), ("user", "hi")]
        assert seen["state"] is SessionState.AWAITING_MODEL
        assert session.state is SessionState.IDLE

    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_text_rejected(self, session, text):
        with pytest.raises(PreconditionError):
            await session.send(text)
        assert len(session.messages) == 1

    async def test_rejected_while_awaiting(self, session, model, storage):
        release = _gate(model, reply("ok"))
        first = asyncio.create_task(session.send("first"))
        await _until_awaiting(session)

        with pytest.raises(PreconditionError):
            await session.send("second")
        with pytest.raises(PreconditionError):
            await session.regenerate()

        release.set()
        assert (await first).text == "ok"
        assert _texts(session.messages) == [("ai", GREETING), ("user", "first"), ("ai", "ok")]
        assert _texts(storage.get_chat("mio")) == _texts(session.messages)
        assert [text for _, text in model.sent] == ["first"]

    async def test_indicator_keeps_record_saved_during_reply(self, session, model, registry):
        release = _gate(model, reply("ok", "happy", 60))
        pending = asyncio.create_task(session.send("hi"))
        await _until_awaiting(session)

        # e.g. an import replacing the record while the reply is pending
        registry.save(registry.get("mio").model_copy(update={"name": "Mio Imported", "personality": "Bold"}))
        release.set()
        await pending

        stored = registry.get("mio")
        assert stored.name == "Mio Imported"
        assert stored.personality == "Bold"
        assert stored.indicator.value == 60
        assert session.character == stored

    async def test_rejected_without_character(self, storage, registry, model):
        s = ConversationSession(storage, model, registry=registry)
        with pytest.raises(PreconditionError):
            await s.send("hi")


# ---------------------------------------------------------------------------
# Model failure
# ---------------------------------------------------------------------------

class TestModelFailure:
    @pytest.mark.parametrize("error", [ModelError("quota exceeded"), TimeoutError()])
    async def test_failure_becomes_system_message(self, session, model, storage, error):
        model.responses = [error]
        message = await session.send("hi")

        assert message.sender == "system"
        assert message.text.startswith(MODEL_ERROR_TEXT)
        assert [m.sender for m in session.messages] == ["ai", "user", "system"]
        assert [m.sender for m in storage.get_chat("mio")] == ["ai", "user", "system"]
        assert session.state is SessionState.IDLE
        assert session.last_error

    async def test_failure_message_names_error(self, session, model):
        model.responses = [ModelError("quota exceeded")]
        message = await session.send("hi")
        assert "quota exceeded" in message.text

    async def test_session_continues_after_failure(self, session, model):
        model.responses = [ModelError("down"), reply("back!")]
        await session.send("hi")
        message = await session.send("hello?")
        assert message.text == "back!"
        # system notes never reach the model
        prior, _ = model.sent[-1]
        assert all(t.text != session.messages[2].text for t in prior)

    async def test_failed_turn_not_in_context(self, session, model):
        model.responses = [ModelError("down")]
        await session.send("hi")
        assert session.context.turns == [Turn("model", GREETING)]


# ---------------------------------------------------------------------------
# Storage failure
# ---------------------------------------------------------------------------

class TestStorageFailure:
    async def test_user_append_failure_changes_nothing(self, session, model, storage, monkeypatch):
        def fail(character_id, messages):
            raise StorageError("disk full")

        monkeypatch.setattr(storage, "save_chat", fail)
        with pytest.raises(StorageError):
            await session.send("hi")
        assert _texts(session.messages) == [("ai", GREETING)]
        assert model.sent == []
        assert session.state is SessionState.IDLE

    async def test_reply_append_failure_keeps_memory_matching_disk(self, session, model, storage, monkeypatch):
        model.responses = [reply("hey!", "happy", 90)]
        real_save = storage.save_chat
        calls = []

        def flaky(character_id, messages):
            calls.append(len(messages))
            if len(calls) == 2:
                raise StorageError("disk full")
            real_save(character_id, messages)

        monkeypatch.setattr(storage, "save_chat", flaky)
        with pytest.raises(StorageError):
            await session.send("hi")

        assert _texts(session.messages) == _texts(storage.get_chat("mio"))
        assert _texts(session.messages) == [("ai", GREETING), ("user", "hi")]
        assert Turn("model", reply("hey!", "happy", 90)) not in session.context.turns
        assert session.character.indicator.value == 50
        assert session.state is SessionState.IDLE

    def test_edit_failure_leaves_log(self, session, storage, monkeypatch):
        def fail(character_id, messages):
            raise StorageError("disk full")

        monkeypatch.setattr(storage, "save_chat", fail)
        with pytest.raises(StorageError):
            session.edit_message(session.messages[0].id, "changed")
        assert session.messages[0].text == GREETING


# ---------------------------------------------------------------------------
# Edit / delete / regenerate / respond
# ---------------------------------------------------------------------------

@pytest.fixture
async def long_session(session, model):
    model.responses = [reply("r1"), reply("r2"), reply("r3")]
    for text in ("u1", "u2", "u3"):
        await session.send(text)
    return session


class TestEdit:
    @pytest.mark.parametrize("position", [0, 1, 3, 6])
    async def test_truncates_to_and_including(self, long_session, storage, position):
        target = long_session.messages[position].id
        log = long_session.edit_message(target, "edited")
        assert len(log) == position + 1
        assert log[-1].text == "edited"
        assert log[-1].id == target
        assert _texts(storage.get_chat("mio")) == _texts(log)

    async def test_rebuilds_context(self, long_session, model):
        long_session.edit_message(long_session.messages[1].id, "edited")
        assert long_session.context.turns == [Turn("model", GREETING), Turn("user", "edited")]

    async def test_edit_ai_message_allowed(self, long_session):
        log = long_session.edit_message(long_session.messages[2].id, "different reply")
        assert log[-1].sender == "ai"

    async def test_unknown_id(self, long_session):
        with pytest.raises(PreconditionError):
            long_session.edit_message("nope", "x")
        assert len(long_session.messages) == 7

    async def test_empty_text(self, long_session):
        with pytest.raises(PreconditionError):
            long_session.edit_message(long_session.messages[1].id, " ")


class TestDelete:
    @pytest.mark.parametrize("position", [0, 1, 4, 6])
    async def test_truncates_before(self, long_session, storage, position):
        log = long_session.delete_message(long_session.messages[position].id)
        assert len(log) == position
        assert _texts(storage.get_chat("mio")) == _texts(log)

    async def test_rebuilds_context(self, long_session):
        long_session.delete_message(long_session.messages[3].id)
        assert long_session.context.turns == [
            Turn("model", GREETING), Turn("user", "u1"), Turn("model", "r1"),
        ]


class TestRegenerate:
    async def test_rejected_on_greeting_only(self, session, model):
        with pytest.raises(PreconditionError):
            await session.regenerate()
        assert _texts(session.messages) == [("ai", GREETING)]
        assert model.sent == []

    async def test_replaces_last_reply(self, session, model, storage):
        model.responses = [reply("first try"), reply("second try")]
        await session.send("hi")
        message = await session.regenerate()

        assert message.text == "second try"
        assert _texts(session.messages) == [("ai", GREETING), ("user", "hi"), ("ai", "second try")]
        assert _texts(storage.get_chat("mio")) == _texts(session.messages)
        # the model does not see the discarded reply
        prior, text = model.sent[-1]
        assert text == "hi"
        assert prior == [Turn("model", GREETING)]

    async def test_reply_write_failure_keeps_user_message(self, session, model, storage, monkeypatch):
        model.responses = [reply("first try"), reply("second try"), reply("third try")]
        await session.send("precious words")
        real_save = storage.save_chat
        calls = []

        def flaky(character_id, messages):
            calls.append(len(messages))
            if len(calls) == 2:
                raise StorageError("disk full")
            real_save(character_id, messages)

        monkeypatch.setattr(storage, "save_chat", flaky)
        with pytest.raises(StorageError):
            await session.regenerate()

        expected = [("ai", GREETING), ("user", "precious words")]
        assert _texts(storage.get_chat("mio")) == expected
        assert _texts(session.messages) == expected
        assert session.state is SessionState.IDLE

        message = await session.respond()
        assert message.text == "third try"
        assert _texts(storage.get_chat("mio")) == [*expected, ("ai", "third try")]

    async def test_truncate_failure_keeps_reply(self, session, model, storage, monkeypatch):
        model.responses = [reply("first try")]
        await session.send("hi")

        def fail(character_id, messages):
            raise StorageError("disk full")

        monkeypatch.setattr(storage, "save_chat", fail)
        with pytest.raises(StorageError):
            await session.regenerate()
        assert _texts(session.messages) == [("ai", GREETING), ("user", "hi"), ("ai", "first try")]
        assert [text for _, text in model.sent] == ["hi"]

    async def test_rejected_after_system_note(self, session, model):
        model.responses = [ModelError("down")]
        await session.send("hi")
        with pytest.raises(PreconditionError):
            await session.regenerate()
        assert len(session.messages) == 3

    async def test_edit_then_regenerate(self, session, model):
        model.responses = [reply("r1"), reply("r-edited"), reply("r-again")]
        await session.send("hi")
        session.edit_message(session.messages[1].id, "hello there")

        with pytest.raises(PreconditionError):
            await session.regenerate()
        assert _texts(session.messages) == [("ai", GREETING), ("user", "hello there")]

        await session.respond()
        assert session.messages[-1].text == "r-edited"

        message = await session.regenerate()
        assert message.text == "r-again"
        assert model.sent[-1][1] == "hello there"
        assert _texts(session.messages) == [("ai", GREETING), ("user", "hello there"), ("ai", "r-again")]


class TestRespond:
    async def test_answers_trailing_user_message(self, session, model, storage):
        storage.save_chat("mio", [*session.messages, Message(sender="user", text="still there?")])
        session.select_character("mio")
        model.responses = [reply("yes!")]
        message = await session.respond()
        assert message.text == "yes!"
        prior, text = model.sent[-1]
        assert text == "still there?"
        assert prior == [Turn("model", GREETING)]
        assert [m.sender for m in session.messages] == ["ai", "user", "ai"]

    async def test_rejected_when_last_is_ai(self, session):
        with pytest.raises(PreconditionError):
            await session.respond()


# ---------------------------------------------------------------------------
# New chat, system instruction, indicator, transform
# ---------------------------------------------------------------------------

class TestResets:
    async def test_new_chat_reseeds(self, long_session, storage):
        log = long_session.new_chat()
        assert _texts(log) == [("ai", GREETING)]
        assert _texts(storage.get_chat("mio")) == [("ai", GREETING)]
        assert long_session.context.turns == [Turn("model", GREETING)]

    async def test_update_system_instruction_resets_history(self, long_session, registry):
        log = long_session.update_system_instruction("You are {{character.name}}, a pirate.")
        assert _texts(log) == [("ai", GREETING)]
        assert registry.get("mio").system_instruction == "You are {{character.name}}, a pirate."
        assert long_session.system_instruction == "You are Mio, a pirate."
        assert long_session.context.system_instruction == "You are Mio, a pirate."

    async def test_blank_instruction_restores_default(self, session, registry):
        session.update_system_instruction("Custom")
        session.update_system_instruction("   ")
        assert registry.get("mio").system_instruction is None
        assert "visual novel" in session.system_instruction

    async def test_set_indicator_keeps_log(self, long_session, registry):
        before = _texts(long_session.messages)
        character = long_session.set_indicator(-20)
        assert character.indicator.value == 0
        assert registry.get("mio").indicator.value == 0
        assert _texts(long_session.messages) == before
        assert " 0 on a scale" in long_session.context.system_instruction

    def test_set_indicator_clamps_high(self, session):
        assert session.set_indicator(1000).indicator.value == 100

    def test_save_transform(self, session, registry):
        session.save_transform(Transform(x=12, y=-4, scale=1.5))
        assert registry.get("mio").transform == Transform(x=12, y=-4, scale=1.5)

    def test_reload_character_picks_up_edits(self, session, registry):
        registry.save(session.character.model_copy(update={"name": "Mio-chan"}))
        session.reload_character()
        assert session.character.name == "Mio-chan"
        assert "Mio-chan" in session.system_instruction

    def test_set_user(self, session):
        session.set_user("Kai", "curious")
        assert "Kai" in session.system_instruction
        assert "curious" in session.system_instruction

    def test_close(self, session):
        session.close()
        assert session.character is None
        assert session.messages == []
        with pytest.raises(PreconditionError):
            session.new_chat()


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

async def test_suggest_replies(session, model):
    model.responses = ['["Sure!", "Maybe later."]']
    assert await session.suggest_replies() == ["Sure!", "Maybe later."]
    assert model.sent == []


def test_history_turns_drops_system():
    messages = [
        Message(sender="ai", text="a"),
        Message(sender="system", text="err"),
        Message(sender="user", text="b"),
    ]
    assert history_turns(messages) == [Turn("model", "a"), Turn("user", "b")]


def test_stub_model_is_fresh_per_test(model):
    assert isinstance(model, StubModelClient)
    assert model.responses == []
