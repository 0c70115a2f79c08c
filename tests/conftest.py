"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from chat_lore.extraction.context import ExtractionContext, Message
from chat_lore.llm.transport import ChatMessage, TransportResult

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock for store and runner tests."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedTransport:
    """Transport that replays queued outcomes: a string, None, or an exception."""

    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, str, list[ChatMessage], str | None]] = []

    def push(self, *outcomes: object) -> None:
        self.outcomes.extend(outcomes)

    async def call(
        self,
        system: str,
        user: str,
        history: list[ChatMessage],
        model: str | None,
    ) -> TransportResult:
        self.calls.append((system, user, history, model))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return TransportResult(content=outcome, finish_reason="stop")


class BlockingTransport:
    """Transport that waits until released, to exercise abort and single-flight."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def call(
        self,
        system: str,
        user: str,
        history: list[ChatMessage],
        model: str | None,
    ) -> TransportResult:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return TransportResult(content='{"ok": true}')


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def context() -> ExtractionContext:
    return ExtractionContext(
        subject_id="persona-1",
        subject_display_name="Ada",
        messages_context=[
            Message(id="m1", role="human", text="Hi there", timestamp=T0),
        ],
        messages_analyze=[
            Message(
                id="m2",
                role="human",
                text="I moved to Chicago last year and my sister Maya visits often.",
                timestamp=T0 + timedelta(minutes=5),
            ),
        ],
    )
