from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from visual_novel.characters import CharacterRegistry
from visual_novel.config import AppConfig, build_model_client, build_template_engine, load_config
from visual_novel.errors import PreconditionError, StorageError, ValidationError
from visual_novel.llm import ModelClient
from visual_novel.routes import router
from visual_novel.settings import load_settings
from visual_novel.storage import Storage

logger = logging.getLogger(__name__)


def create_app(
    data_dir: Path | None = None,
    config: AppConfig | None = None,
    model_client: ModelClient | None = None,
) -> FastAPI:
    """Build the API app. With no arguments everything comes from the
    environment (uvicorn --factory visual_novel.app:create_app)."""
    config = config or load_config()
    storage = Storage(data_dir or config.data_dir)

    app = FastAPI(title="AI Visual Novel")
    app.state.config = config
    app.state.storage = storage
    app.state.registry = CharacterRegistry(storage)
    app.state.model_client = model_client or build_model_client(config, load_settings(storage).credential)
    app.state.fixed_model_client = model_client is not None
    app.state.template_engine = build_template_engine(config)
    app.state.sessions = {}
    app.include_router(router, prefix="/api")

    @app.exception_handler(PreconditionError)
    async def precondition_failed(request: Request, exc: PreconditionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_failed(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_failed(request: Request, exc: StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": f"Storage unavailable: {exc}"})

    return app
