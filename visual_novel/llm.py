"""Model client: HTTP connection to a chat model backend.

The conversation session talks to the model through this protocol:

    def create_context(self, system_instruction: str, prior_turns: list[Turn]) -> ConversationContext: ...
    async def send_turn(self, context: ConversationContext, user_text: str) -> str: ...
    async def complete(self, system_instruction: str, prompt: str) -> str: ...

A ConversationContext is the model-side view of the chat: the rendered system
instruction plus the user/model turns so far. send_turn() appends the new turn
pair to the context only when the call succeeds, so a failed call leaves the
context as it was. The session never edits a context in place; after a
rollback it asks for a fresh one.

Two implementations are provided:

    HttpModelClient  real HTTP client, supports the Gemini generateContent API
                      and OpenAI-compatible chat completions. Selected by
                      provider_format.
    EchoModelClient  replies with the user's text as dialogue. No network
                      calls; useful for running the app without a model.

Production code builds one HttpModelClient at startup (config.build_model_client)
and hands it to every session. Tests use a scripted stub (see conftest.py).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

import httpx

from visual_novel.errors import ModelError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Conversation context
# ---------------------------------------------------------------------------

Role = Literal["user", "model"]


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str


@dataclass
class ConversationContext:
    system_instruction: str
    turns: list[Turn] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Protocol: every model client must match these signatures
# ---------------------------------------------------------------------------

class ModelClient(Protocol):
    def create_context(self, system_instruction: str, prior_turns: list[Turn]) -> ConversationContext: ...

    async def send_turn(self, context: ConversationContext, user_text: str) -> str: ...

    async def complete(self, system_instruction: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# HttpModelClient: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["gemini", "openai"]

# Schema for the three-key chat reply; sent to Gemini as responseSchema.
REPLY_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "dialogue": {"type": "STRING"},
        "emotion": {"type": "STRING"},
        "indicatorValue": {"type": "NUMBER"},
    },
    "required": ["dialogue", "emotion"],
}


class HttpModelClient:
    """Async HTTP client for chat model backends.

    Supported formats:
      "gemini"  POST /v1beta/models/{model}:generateContent
                  Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
      "openai"  POST /v1/chat/completions  {"model": ..., "messages": [...]}
                  Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend.
        api_key:         Credential, or empty string if not required.
        provider_format: Wire format to use. Defaults to "gemini".
        model:           Model identifier.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "gemini",
        model: str = "gemini-2.5-flash",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def create_context(self, system_instruction: str, prior_turns: list[Turn]) -> ConversationContext:
        return ConversationContext(system_instruction=system_instruction, turns=list(prior_turns))

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            if self._format == "gemini":
                headers["x-goog-api-key"] = self._api_key
            else:
                headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self, system_instruction: str, turns: list[Turn], structured: bool
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            messages = [{"role": "system", "content": system_instruction}]
            for turn in turns:
                role = "assistant" if turn.role == "model" else "user"
                messages.append({"role": role, "content": turn.text})
            body: dict = {"model": self._model, "messages": messages}
            if structured:
                body["response_format"] = {"type": "json_object"}
            return url, body

        # gemini (default)
        url = f"{self._base_url}/v1beta/models/{self._model}:generateContent"
        body = {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": [
                {"role": turn.role, "parts": [{"text": turn.text}]} for turn in turns
            ],
        }
        if structured:
            body["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": REPLY_SCHEMA,
            }
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the reply text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or not isinstance(choices[0].get("message", {}).get("content"), str):
                raise ModelError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"]["content"]

        # gemini
        candidates = data.get("candidates")
        parts = (candidates or [{}])[0].get("content", {}).get("parts")
        if not parts:
            feedback = data.get("promptFeedback", {}).get("blockReason")
            if feedback:
                raise ModelError(f"Gemini blocked the request: {feedback}")
            raise ModelError("Unexpected response format from Gemini backend")
        return "".join(part.get("text", "") for part in parts)

    async def _post(self, system_instruction: str, turns: list[Turn], structured: bool) -> str:
        url, body = self._build_request(system_instruction, turns, structured)
        logger.debug("model call url=%s turns=%d", url, len(turns))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ModelError(f"Cannot connect to model backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise ModelError(f"Model backend rejected the credential (HTTP {status})") from e
            if status == 429:
                raise ModelError("Model backend quota exceeded (HTTP 429)") from e
            raise ModelError(f"Model backend returned HTTP {status}") from e
        except httpx.TimeoutException as e:
            raise ModelError(f"Model backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise ModelError(f"Model request failed: {e}") from e
        except httpx.InvalidURL as e:
            raise ModelError(f"Invalid model backend URL {self._base_url!r}: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ModelError("Model backend returned a non-JSON body") from e
        try:
            text = self._parse_response(data)
        except (AttributeError, TypeError, KeyError, IndexError) as e:
            raise ModelError("Unexpected response format from model backend") from e
        logger.debug("model response len=%d", len(text))
        return text

    async def send_turn(self, context: ConversationContext, user_text: str) -> str:
        turns = [*context.turns, Turn("user", user_text)]
        text = await self._post(context.system_instruction, turns, structured=True)
        context.turns.extend([Turn("user", user_text), Turn("model", text)])
        return text

    async def complete(self, system_instruction: str, prompt: str) -> str:
        return await self._post(system_instruction, [Turn("user", prompt)], structured=False)


# ---------------------------------------------------------------------------
# EchoModelClient: no network; replies with the user's own words
# ---------------------------------------------------------------------------

class EchoModelClient:
    """Replies with {"dialogue": <user text>, "emotion": "neutral"}.

    Lets you click through the app (sessions, storage writes, rollbacks)
    without a running model.
    """

    def create_context(self, system_instruction: str, prior_turns: list[Turn]) -> ConversationContext:
        return ConversationContext(system_instruction=system_instruction, turns=list(prior_turns))

    async def send_turn(self, context: ConversationContext, user_text: str) -> str:
        logger.debug("EchoModelClient turns=%d", len(context.turns))
        text = json.dumps({"dialogue": user_text, "emotion": "neutral"})
        context.turns.extend([Turn("user", user_text), Turn("model", text)])
        return text

    async def complete(self, system_instruction: str, prompt: str) -> str:
        return prompt
