"""Conversation slices handed through the extraction pipeline."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from chat_lore.timeutil import from_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 10_000
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
SYSTEM_PROMPT_BUFFER = 1_000
CONTEXT_RATIO = 0.15
ANALYZE_RATIO = 0.85


@dataclass(slots=True)
class Message:
    """One conversation turn."""

    id: str
    role: str
    text: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(
            id=str(raw["id"]),
            role=str(raw.get("role", "human")),
            text=str(raw.get("text", "")),
            timestamp=from_iso(str(raw["timestamp"])),
        )


@dataclass(slots=True)
class ExtractionContext:
    """Who is being learned about, prior background, and the slice to mine."""

    subject_id: str
    subject_display_name: str
    messages_context: list[Message] = field(default_factory=list)
    messages_analyze: list[Message] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "subject_display_name": self.subject_display_name,
            "messages_context": [message.to_dict() for message in self.messages_context],
            "messages_analyze": [message.to_dict() for message in self.messages_analyze],
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ExtractionContext:
        return cls(
            subject_id=str(payload["subject_id"]),
            subject_display_name=str(
                payload.get("subject_display_name") or payload["subject_id"],
            ),
            messages_context=[
                Message.from_dict(raw) for raw in payload.get("messages_context") or []
            ],
            messages_analyze=[
                Message.from_dict(raw) for raw in payload.get("messages_analyze") or []
            ],
        )


def split_messages_by_timestamp(
    messages: list[Message],
    analyze_from: datetime | None,
) -> tuple[list[Message], list[Message]]:
    """Split history into (context, analyze) at the first message at/after `analyze_from`."""

    if analyze_from is None:
        return [], list(messages)
    for index, message in enumerate(messages):
        if message.timestamp >= analyze_from:
            return list(messages[:index]), list(messages[index:])
    return list(messages), []


def build_context(
    *,
    subject_id: str,
    subject_display_name: str,
    messages: list[Message],
    analyze_from: datetime | None = None,
) -> ExtractionContext:
    messages_context, messages_analyze = split_messages_by_timestamp(messages, analyze_from)
    return ExtractionContext(
        subject_id=subject_id,
        subject_display_name=subject_display_name,
        messages_context=messages_context,
        messages_analyze=messages_analyze,
    )


def estimate_tokens(messages: Iterable[Message]) -> int:
    """Rough token count: four characters per token plus a small per-message overhead."""

    return sum(_message_tokens(message) for message in messages)


def estimate_context_tokens(context: ExtractionContext) -> int:
    return (
        estimate_tokens(context.messages_context)
        + estimate_tokens(context.messages_analyze)
        + SYSTEM_PROMPT_BUFFER
    )


def chunk_extraction_context(
    context: ExtractionContext,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> list[ExtractionContext]:
    """Split the analyze slice into batches that fit a `max_tokens` prompt.

    After the system prompt buffer, 15% of the budget goes to background and
    85% to analyzed messages. The first batch takes its background from the
    tail of `messages_context`; each later batch takes it from the tail of the
    previous batch. A single message over budget still gets a batch of its own.
    An empty analyze slice yields no batches.
    """

    if max_tokens <= SYSTEM_PROMPT_BUFFER:
        raise ValueError(f"max_tokens must be > {SYSTEM_PROMPT_BUFFER}, got {max_tokens}")
    analyze = context.messages_analyze
    if not analyze:
        return []

    available = max_tokens - SYSTEM_PROMPT_BUFFER
    context_budget = math.floor(available * CONTEXT_RATIO)
    analyze_budget = math.floor(available * ANALYZE_RATIO)
    background = _fit_from_end(context.messages_context, context_budget)

    total = estimate_tokens(analyze)
    if total <= analyze_budget:
        return [replace(context, messages_context=background, messages_analyze=list(analyze))]

    chunks: list[ExtractionContext] = []
    start = 0
    while start < len(analyze):
        pulled = _pull_from_start(analyze, start, analyze_budget)
        chunks.append(replace(context, messages_context=background, messages_analyze=pulled))
        background = _fit_from_end(pulled, context_budget)
        start += len(pulled)

    logger.info(
        "Split %d message(s) (~%d tokens) for %s into %d batch(es) of <= %d tokens",
        len(analyze),
        total,
        context.subject_id,
        len(chunks),
        analyze_budget,
    )
    return chunks


def _message_tokens(message: Message) -> int:
    return math.ceil(len(message.text) / CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS


def _fit_from_end(messages: list[Message], budget: int) -> list[Message]:
    kept: list[Message] = []
    tokens = 0
    for message in reversed(messages):
        cost = _message_tokens(message)
        if tokens + cost > budget:
            break
        kept.append(message)
        tokens += cost
    kept.reverse()
    return kept


def _pull_from_start(messages: list[Message], start: int, budget: int) -> list[Message]:
    pulled: list[Message] = []
    tokens = 0
    for message in messages[start:]:
        cost = _message_tokens(message)
        if pulled and tokens + cost > budget:
            break
        pulled.append(message)
        tokens += cost
    return pulled
