"""FastAPI API endpoints under /api.

Endpoint groups: settings + templates, characters (CRUD, import/export), and
chat sessions. Chat operations are nested under /api/characters/{id}/ and need
a session opened with POST /api/characters/{id}/session.
"""

from fastapi import APIRouter

from .characters import router as characters_router
from .chat import router as chat_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(characters_router)
router.include_router(chat_router)
