"""Chat session endpoints: select, send, regenerate, edit, delete, reset."""

from fastapi import APIRouter, HTTPException, Request

from visual_novel.errors import PreconditionError
from visual_novel.models import Message, Transform
from visual_novel.session import ConversationSession
from visual_novel.settings import load_settings

from .models import ChatBody, EditMessageBody, IndicatorBody, SystemInstructionBody

router = APIRouter()


def _session(request: Request, character_id: str) -> ConversationSession:
    session = request.app.state.sessions.get(character_id)
    if session is None:
        raise PreconditionError("Character not selected: open a session first")
    return session


def _payload(session: ConversationSession, message: Message | None = None) -> dict:
    payload = {
        "character": session.character.to_record() if session.character else None,
        "messages": [m.to_record() for m in session.messages],
        "state": session.state.value,
    }
    if message is not None:
        payload["message"] = message.to_record()
    return payload


@router.post("/characters/{character_id}/session")
async def open_session(request: Request, character_id: str):
    """Select a character: load (or seed) its chat and build the model context."""
    state = request.app.state
    if state.registry.get(character_id) is None:
        raise HTTPException(404, "Character not found")

    session = state.sessions.get(character_id)
    if session is None:
        settings = load_settings(state.storage)
        session = ConversationSession(
            state.storage,
            state.model_client,
            registry=state.registry,
            user_name=settings.user_name,
            user_personality=settings.user_personality,
            template_engine=state.template_engine,
        )
    session.select_character(character_id)
    state.sessions[character_id] = session
    return _payload(session)


@router.delete("/characters/{character_id}/session")
async def close_session(request: Request, character_id: str):
    """Leave the chat (the history stays stored)."""
    session = _session(request, character_id)
    session.close()
    del request.app.state.sessions[character_id]
    return {"ok": True}


@router.get("/characters/{character_id}/messages")
async def get_messages(request: Request, character_id: str):
    """Stored chat history for a character ([] before the first session)."""
    state = request.app.state
    if state.registry.get(character_id) is None:
        raise HTTPException(404, "Character not found")
    return [m.to_record() for m in state.storage.get_chat(character_id) or []]


@router.post("/characters/{character_id}/chat")
async def send_message(request: Request, character_id: str, body: ChatBody):
    """Send a user message and get the character's reply."""
    session = _session(request, character_id)
    message = await session.send(body.message)
    return _payload(session, message)


@router.post("/characters/{character_id}/respond")
async def respond(request: Request, character_id: str):
    """Get a reply to a trailing user message (e.g. after editing it)."""
    session = _session(request, character_id)
    message = await session.respond()
    return _payload(session, message)


@router.post("/characters/{character_id}/regenerate")
async def regenerate(request: Request, character_id: str):
    """Replace the last reply with a new one."""
    session = _session(request, character_id)
    message = await session.regenerate()
    return _payload(session, message)


@router.patch("/characters/{character_id}/messages/{message_id}")
async def edit_message(request: Request, character_id: str, message_id: str, body: EditMessageBody):
    """Rewrite a message; everything after it is discarded."""
    session = _session(request, character_id)
    session.edit_message(message_id, body.text)
    return _payload(session)


@router.delete("/characters/{character_id}/messages/{message_id}")
async def delete_message(request: Request, character_id: str, message_id: str):
    """Rewind the chat to just before a message."""
    session = _session(request, character_id)
    session.delete_message(message_id)
    return _payload(session)


@router.post("/characters/{character_id}/new-chat")
async def new_chat(request: Request, character_id: str):
    """Start over from the greeting."""
    session = _session(request, character_id)
    session.new_chat()
    return _payload(session)


@router.put("/characters/{character_id}/system-instruction")
async def update_system_instruction(request: Request, character_id: str, body: SystemInstructionBody):
    """Set (or clear) the custom system instruction. Starts a new chat."""
    session = _session(request, character_id)
    session.update_system_instruction(body.instruction)
    return {**_payload(session), "systemInstruction": session.system_instruction}


@router.put("/characters/{character_id}/indicator")
async def set_indicator(request: Request, character_id: str, body: IndicatorBody):
    """Manually override the indicator value (clamped to 0-100)."""
    session = _session(request, character_id)
    session.set_indicator(body.value)
    return _payload(session)


@router.put("/characters/{character_id}/transform")
async def save_transform(request: Request, character_id: str, body: Transform):
    """Store the sprite placement."""
    session = _session(request, character_id)
    return session.save_transform(body).to_record()


@router.post("/characters/{character_id}/suggestions")
async def suggestions(request: Request, character_id: str):
    """Two suggested things for the user to say next."""
    session = _session(request, character_id)
    return {"suggestions": await session.suggest_replies()}
