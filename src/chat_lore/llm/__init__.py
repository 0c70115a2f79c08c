"""LLM transport and completion parsing."""

from chat_lore.llm.parsing import JsonParseError, clean_response_content, parse_json_response
from chat_lore.llm.transport import (
    ChatMessage,
    LlmTransport,
    LlmTransportError,
    OpenAICompatibleTransport,
    TransportResult,
)

__all__ = [
    "ChatMessage",
    "JsonParseError",
    "LlmTransport",
    "LlmTransportError",
    "OpenAICompatibleTransport",
    "TransportResult",
    "clean_response_content",
    "parse_json_response",
]
