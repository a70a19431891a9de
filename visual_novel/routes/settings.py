"""Health check, settings and prompt template endpoints."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from visual_novel.config import build_model_client
from visual_novel.prompts import DEFAULT_SYSTEM_INSTRUCTION, PLACEHOLDERS, PRESETS
from visual_novel.session import SessionState
from visual_novel.settings import load_settings, save_settings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get user settings (credential redacted)."""
    return load_settings(request.app.state.storage).public()


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update user settings (partial merge).

    A new credential rebuilds the model client for every open session; a new
    user name or personality applies to idle sessions right away and to busy
    ones on their next selection.
    """
    state = request.app.state
    try:
        settings = save_settings(state.storage, body)
    except PydanticValidationError as e:
        raise HTTPException(422, str(e))

    if "credential" in body and not state.fixed_model_client:
        state.model_client = build_model_client(state.config, settings.credential)
        for session in state.sessions.values():
            session.model_client = state.model_client

    for session in state.sessions.values():
        if session.state is SessionState.IDLE:
            session.set_user(settings.user_name, settings.user_personality)

    return settings.public()


@router.get("/templates")
async def get_templates():
    """Default system instruction, presets and the supported placeholders."""
    return {
        "default": DEFAULT_SYSTEM_INSTRUCTION,
        "presets": PRESETS,
        "placeholders": PLACEHOLDERS,
    }
