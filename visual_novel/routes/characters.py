"""Character CRUD and bulk import/export endpoints."""

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from visual_novel.characters import migrate_character, new_character
from visual_novel.models import Character
from visual_novel.session import SessionState
from visual_novel.settings import load_settings
from visual_novel.suggestions import generate_greeting
from visual_novel.transfer import export_characters, export_filename, import_characters

from .models import CreateCharacter, ExportBody

router = APIRouter()


@router.get("/characters")
async def list_characters(request: Request):
    """List all characters."""
    return [c.to_record() for c in request.app.state.registry.list()]


@router.post("/characters", status_code=201)
async def create_character(request: Request, body: CreateCharacter):
    """Create a character with a fresh id. Without a greeting, the model writes one."""
    state = request.app.state
    fields = body.model_dump(exclude_none=True)
    name = fields.pop("name")
    character = new_character(name, **fields)
    if not character.greeting:
        settings = load_settings(state.storage)
        greeting = await generate_greeting(
            state.model_client, character, settings.user_name, settings.user_personality
        )
        character = character.model_copy(update={"greeting": greeting})
    return state.registry.save(character).to_record()


@router.post("/characters/export")
async def export(request: Request, body: ExportBody):
    """Serialize the selected characters (no chat history)."""
    return {
        "filename": export_filename(),
        "characters": export_characters(request.app.state.registry, body.ids),
    }


@router.post("/characters/import")
async def import_(request: Request, data: Any = Body(...)):
    """Import a character array; records without id, name and sprites are skipped.
    Nothing is written if any record targets a character awaiting a reply."""
    sessions = request.app.state.sessions
    if isinstance(data, list):
        busy = sorted({
            item["id"] for item in data
            if isinstance(item, dict) and isinstance(item.get("id"), str)
            and item["id"] in sessions
            and sessions[item["id"]].state is not SessionState.IDLE
        })
        if busy:
            raise HTTPException(409, f"Waiting for the model to reply: {', '.join(busy)}")

    imported = import_characters(request.app.state.registry, data)
    for character in imported:
        session = sessions.get(character.id)
        if session is not None:
            session.reload_character()
    return {"imported": len(imported), "characters": [c.to_record() for c in imported]}


@router.get("/characters/{character_id}")
async def get_character(request: Request, character_id: str):
    """Get a single character by id."""
    character = request.app.state.registry.get(character_id)
    if character is None:
        raise HTTPException(404, "Character not found")
    return character.to_record()


@router.put("/characters/{character_id}")
async def put_character(request: Request, character_id: str, body: dict):
    """Create or replace a character. The id in the path wins."""
    session = request.app.state.sessions.get(character_id)
    if session is not None and session.state is not SessionState.IDLE:
        raise HTTPException(409, "Character is waiting for the model to reply")
    try:
        character = Character.model_validate(migrate_character({**body, "id": character_id}))
    except PydanticValidationError as e:
        raise HTTPException(422, str(e))
    saved = request.app.state.registry.save(character)
    if session is not None:
        session.reload_character()
    return saved.to_record()


@router.delete("/characters/{character_id}")
async def delete_character(request: Request, character_id: str):
    """Delete a character and its chat history."""
    state = request.app.state
    session = state.sessions.get(character_id)
    if session is not None:
        session.close()
        del state.sessions[character_id]
    if not state.registry.delete(character_id):
        raise HTTPException(404, "Character not found")
    return {"ok": True}
