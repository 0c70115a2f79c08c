"""OpenAI-compatible chat completion transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from chat_lore.config import LlmSettings

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
USER_FIRST_PLACEHOLDER = "(conversation start)"


class LlmTransportError(Exception):
    """Raised when the provider call fails or returns a non-2xx status."""


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class TransportResult:
    """Raw completion returned by a provider."""

    content: str | None
    finish_reason: str | None = None


@dataclass(slots=True)
class ResolvedModel:
    provider: str
    model: str
    base_url: str
    api_key: str


class LlmTransport(Protocol):
    """Protocol implemented by LLM transports.

    Cancellation is cooperative: the executor cancels the awaiting task.
    """

    async def call(
        self,
        system: str,
        user: str,
        history: list[ChatMessage],
        model: str | None,
    ) -> TransportResult:
        """Run one completion."""


class OpenAICompatibleTransport:
    """Calls `/chat/completions` on a local server or OpenAI."""

    def __init__(
        self,
        settings: LlmSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout_seconds, connect=10.0),
        )
        self._call_count = 0

    async def call(
        self,
        system: str,
        user: str,
        history: list[ChatMessage],
        model: str | None,
    ) -> TransportResult:
        resolved = resolve_model(model, self.settings)
        messages = ensure_user_first(
            [ChatMessage("system", system), *history, ChatMessage("user", user)],
        )
        self._call_count += 1
        total_chars = sum(len(message.content) for message in messages)
        logger.debug(
            "LLM call #%d provider=%s model=%s ~%d tokens",
            self._call_count,
            resolved.provider,
            resolved.model,
            total_chars // 4,
        )

        headers = {"Content-Type": "application/json"}
        if resolved.api_key and resolved.api_key != "not-needed":
            headers["Authorization"] = f"Bearer {resolved.api_key}"
        try:
            response = await self._client.post(
                f"{resolved.base_url.rstrip('/')}/chat/completions",
                headers=headers,
                json={
                    "model": resolved.model,
                    "messages": [message.to_dict() for message in messages],
                    "temperature": self.settings.temperature,
                },
            )
        except httpx.TimeoutException as exc:
            raise LlmTransportError(f"LLM request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LlmTransportError(f"LLM network error: {exc}") from exc

        if not response.is_success:
            raise LlmTransportError(f"LLM API error ({response.status_code}): {response.text}")
        return _parse_completion(response.json())

    async def aclose(self) -> None:
        await self._client.aclose()


def resolve_model(model_spec: str | None, settings: LlmSettings) -> ResolvedModel:
    """Resolve `provider:model` (or a bare model) against configured providers."""

    spec = (model_spec or settings.default_model).strip()
    provider, _, model = spec.partition(":")
    if not model:
        provider, model = "local", spec

    if provider == "local":
        return ResolvedModel(
            provider="local",
            model=model,
            base_url=settings.base_url,
            api_key=settings.api_key,
        )
    if provider == "openai":
        if not settings.openai_api_key:
            raise LlmTransportError(
                "OpenAI provider requested but CHAT_LORE_OPENAI_API_KEY is empty",
            )
        return ResolvedModel(
            provider="openai",
            model=model,
            base_url=OPENAI_BASE_URL,
            api_key=settings.openai_api_key,
        )
    raise LlmTransportError(f"Unknown provider: {provider}")


def ensure_user_first(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Insert a user turn between system and a leading assistant turn.

    Some chat templates reject system -> assistant ordering.
    """

    if len(messages) > 1 and messages[0].role == "system" and messages[1].role == "assistant":
        return [messages[0], ChatMessage("user", USER_FIRST_PLACEHOLDER), *messages[1:]]
    return list(messages)


def _parse_completion(data: dict[str, Any]) -> TransportResult:
    choices = data.get("choices") or []
    if not choices:
        return TransportResult(content=None)
    choice = choices[0]
    message = choice.get("message") or {}
    return TransportResult(
        content=message.get("content"),
        finish_reason=choice.get("finish_reason"),
    )
