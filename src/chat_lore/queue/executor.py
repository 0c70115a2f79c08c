"""Single-flight executor that runs one job against the LLM transport."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from chat_lore.llm.parsing import (
    JsonParseError,
    clean_response_content,
    is_silence,
    parse_json_response,
)
from chat_lore.llm.transport import ChatMessage, LlmTransport, TransportResult
from chat_lore.queue.models import Job, JobKind, JobResponse

logger = logging.getLogger(__name__)

ABORTED_ERROR = "LLM call aborted"
EMPTY_RESPONSE_ERROR = "Empty response from LLM"

HistoryProvider = Callable[[Job], list[ChatMessage]]
CompletionCallback = Callable[[JobResponse], Awaitable[None] | None]


class ExecutorState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


class ExecutorBusyError(RuntimeError):
    """Raised when a second job is started while one is in flight."""


class JobExecutor:
    """Runs at most one transport call at a time and classifies its outcome."""

    def __init__(
        self,
        *,
        transport: LlmTransport,
        history_provider: HistoryProvider | None = None,
        default_model: str | None = None,
    ) -> None:
        self.transport = transport
        self.history_provider = history_provider
        self.default_model = default_model
        self._state = ExecutorState.IDLE
        self._call_task: asyncio.Task[TransportResult] | None = None
        self._abort_requested = False

    def get_state(self) -> ExecutorState:
        return self._state

    def start(self, job: Job, on_complete: CompletionCallback) -> asyncio.Task[None]:
        """Schedule `job` and invoke `on_complete` with its response."""

        self._acquire()
        coroutine = self._run_with_callback(job, on_complete)
        try:
            return asyncio.create_task(coroutine)
        except RuntimeError:
            coroutine.close()
            self._release()
            raise

    async def execute(self, job: Job) -> JobResponse:
        """Run `job` and return its response."""

        self._acquire()
        try:
            return await self._process(job)
        finally:
            self._release()

    def abort(self) -> None:
        """Cancel the in-flight transport call; no-op when idle."""

        if self._state != ExecutorState.BUSY or self._call_task is None:
            return
        self._abort_requested = True
        self._call_task.cancel()

    def _acquire(self) -> None:
        if self._state == ExecutorState.BUSY:
            raise ExecutorBusyError("Executor is already processing a job")
        self._state = ExecutorState.BUSY
        self._abort_requested = False

    def _release(self) -> None:
        self._state = ExecutorState.IDLE
        self._call_task = None
        self._abort_requested = False

    async def _run_with_callback(self, job: Job, on_complete: CompletionCallback) -> None:
        try:
            response = await self._process(job)
            outcome = on_complete(response)
            if outcome is not None:
                await outcome
        finally:
            self._release()

    async def _process(self, job: Job) -> JobResponse:
        history: list[ChatMessage] = []
        if job.kind == JobKind.RESPONSE and self.history_provider is not None:
            history = self.history_provider(job)

        self._call_task = asyncio.create_task(
            self.transport.call(
                job.system,
                job.user,
                history,
                job.model or self.default_model,
            ),
        )
        try:
            result = await self._call_task
        except asyncio.CancelledError:
            if not self._abort_requested:
                raise
            logger.info("Job %s (%s) aborted", job.id, job.next_step)
            return JobResponse(job=job, success=False, content=None, error=ABORTED_ERROR)
        except Exception as error:  # noqa: BLE001
            return JobResponse(job=job, success=False, content=None, error=str(error))

        if not result.content:
            return JobResponse(
                job=job,
                success=False,
                content=None,
                error=EMPTY_RESPONSE_ERROR,
                finish_reason=result.finish_reason,
            )
        return _classify(job, result)


def _classify(job: Job, result: TransportResult) -> JobResponse:
    content = result.content or ""
    if job.kind == JobKind.JSON:
        try:
            parsed = parse_json_response(content)
        except JsonParseError as error:
            return JobResponse(
                job=job,
                success=False,
                content=content,
                error=f"JSON parse failed: {error}",
                finish_reason=result.finish_reason,
            )
        return JobResponse(
            job=job,
            success=True,
            content=content,
            parsed=parsed,
            finish_reason=result.finish_reason,
        )

    if job.kind == JobKind.RESPONSE:
        cleaned = clean_response_content(content)
        return JobResponse(
            job=job,
            success=True,
            content=None if is_silence(cleaned) else cleaned,
            finish_reason=result.finish_reason,
        )

    return JobResponse(
        job=job,
        success=True,
        content=content,
        finish_reason=result.finish_reason,
    )
