"""Process configuration from environment variables (and an optional .env file)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from visual_novel.llm import EchoModelClient, HttpModelClient, ModelClient
from visual_novel.prompts import HandlebarsTemplateEngine, LiteralTemplateEngine, TemplateEngine

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT / "data"

MODEL_FORMATS = ("gemini", "openai", "echo")
TEMPLATE_ENGINES = ("literal", "handlebars")


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    model_url: str = "https://generativelanguage.googleapis.com"
    model_format: str = "gemini"
    model_name: str = "gemini-2.5-flash"
    model_timeout: float = 120.0
    model_api_key: str = ""
    template_engine: str = "literal"


def load_config(env_file: Path | None = ROOT / ".env") -> AppConfig:
    """Read AppConfig from the environment. Values in env_file do not override
    variables that are already set."""
    if env_file is not None:
        load_dotenv(env_file)

    model_format = os.getenv("MODEL_FORMAT", "gemini").lower()
    if model_format not in MODEL_FORMATS:
        raise ValueError(f"MODEL_FORMAT must be one of {', '.join(MODEL_FORMATS)}, got {model_format!r}")

    template_engine = os.getenv("TEMPLATE_ENGINE", "literal").lower()
    if template_engine not in TEMPLATE_ENGINES:
        raise ValueError(
            f"TEMPLATE_ENGINE must be one of {', '.join(TEMPLATE_ENGINES)}, got {template_engine!r}"
        )

    return AppConfig(
        data_dir=Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR))),
        model_url=os.getenv("MODEL_URL", AppConfig.model_url),
        model_format=model_format,
        model_name=os.getenv("MODEL_NAME", AppConfig.model_name),
        model_timeout=float(os.getenv("MODEL_TIMEOUT", str(AppConfig.model_timeout))),
        model_api_key=os.getenv("MODEL_API_KEY", ""),
        template_engine=template_engine,
    )


def build_model_client(config: AppConfig, credential: str = "") -> ModelClient:
    """Construct the model client once; the stored credential wins over MODEL_API_KEY."""
    if config.model_format == "echo":
        logger.info("Using EchoModelClient (MODEL_FORMAT=echo)")
        return EchoModelClient()
    api_key = credential or config.model_api_key
    if not api_key:
        logger.warning("No model credential configured; model calls will likely fail")
    return HttpModelClient(
        provider_url=config.model_url,
        api_key=api_key,
        provider_format=config.model_format,
        model=config.model_name,
        timeout=config.model_timeout,
    )


def build_template_engine(config: AppConfig) -> TemplateEngine:
    if config.template_engine == "handlebars":
        logger.info("Rendering system instructions with Handlebars (TEMPLATE_ENGINE=handlebars)")
        return HandlebarsTemplateEngine()
    return LiteralTemplateEngine()
