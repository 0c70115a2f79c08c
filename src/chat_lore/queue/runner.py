"""Async worker loop that drains the job store through the executor and router."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from chat_lore.config import QueueSettings
from chat_lore.extraction.router import ResponseRouter, UnknownStepError
from chat_lore.knowledge.base import InMemoryKnowledgeBase
from chat_lore.queue.executor import JobExecutor
from chat_lore.queue.models import FailResult, Job, JobResponse, JobState
from chat_lore.queue.snapshot import SnapshotStore
from chat_lore.queue.store import JobStore
from chat_lore.timeutil import utc_now

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    LLM_ERROR = "LLM_ERROR"
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
    HANDLER_ERROR = "HANDLER_ERROR"


@dataclass(slots=True)
class ErrorNotice:
    """Failure surfaced to an optional observer, e.g. a UI status line."""

    code: ErrorCode
    message: str
    job_id: str


@dataclass(slots=True)
class RunnerSummary:
    """Aggregate runner counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def add(self, other: RunnerSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls


class QueueRunner:
    """Claims one job at a time, runs it, and routes the response.

    The runner is the only caller of `claim_highest`, so at most one job is
    ever in `processing`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        executor: JobExecutor,
        router: ResponseRouter,
        settings: QueueSettings | None = None,
        snapshot: SnapshotStore | None = None,
        knowledge: InMemoryKnowledgeBase | None = None,
        on_error: Callable[[ErrorNotice], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.executor = executor
        self.router = router
        self.settings = settings or QueueSettings()
        self.snapshot = snapshot
        self.knowledge = knowledge
        self.on_error = on_error
        self._clock = clock
        self._wake = asyncio.Event()
        self._stop_requested = False
        self._dirty = False
        self._last_saved_monotonic: float | None = None
        self._last_trim_at: datetime | None = None
        store.set_change_listener(self._on_store_change)

    def stop(self) -> None:
        """Ask `run_loop` to return after the current job."""

        self._stop_requested = True
        self._wake.set()

    async def run_once(self) -> RunnerSummary:
        """Process at most one job from the queue."""

        summary = RunnerSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        self._trim_dead_letters_if_due()

        ready_at = self.store.next_ready_at()
        if ready_at is not None and ready_at > self._clock():
            summary.idle_polls = 1
            return summary

        job = self.store.claim_highest()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.debug("Claimed job %s (%s, attempt %d)", job.id, job.next_step, job.attempts + 1)
        response = await self.executor.execute(job)
        self._handle_response(response, summary)
        return summary

    async def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        stop_when_idle: bool = False,
    ) -> RunnerSummary:
        """Run until stopped, `max_jobs` processed, or (optionally) nothing is pending.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            stop_when_idle: Return once no pending job remains. Jobs waiting on
                backoff still count as pending.
        """

        aggregate = RunnerSummary()
        self._stop_requested = False
        try:
            with self._signal_handlers():
                while not self._stop_requested:
                    if max_jobs is not None and aggregate.processed >= max_jobs:
                        break

                    self._wake.clear()
                    summary = await self.run_once()
                    aggregate.add(summary)
                    await self.save_snapshot_if_due()

                    if summary.processed:
                        continue
                    if stop_when_idle and not self._has_pending():
                        break
                    await self._sleep_until_woken()
        finally:
            self.flush_snapshot()
        return aggregate

    def flush_snapshot(self) -> None:
        """Persist pending changes now, blocking the caller."""

        captured = self._capture_snapshot()
        if captured is not None:
            self._write_snapshot(*captured)

    async def save_snapshot_if_due(self) -> None:
        """Persist pending changes at most once per snapshot debounce interval.

        State is captured on the loop; the SQLite write runs in a worker thread.
        """

        if self._last_saved_monotonic is not None:
            elapsed = time.monotonic() - self._last_saved_monotonic
            if elapsed < self.settings.snapshot_debounce_seconds:
                return
        captured = self._capture_snapshot()
        if captured is not None:
            await asyncio.to_thread(self._write_snapshot, *captured)

    def _capture_snapshot(self) -> tuple[list[Job], InMemoryKnowledgeBase | None] | None:
        if self.snapshot is None or not self._dirty:
            return None
        jobs = self.store.export()
        knowledge = self.knowledge.copy() if self.knowledge is not None else None
        self._dirty = False
        self._last_saved_monotonic = time.monotonic()
        return jobs, knowledge

    def _write_snapshot(self, jobs: list[Job], knowledge: InMemoryKnowledgeBase | None) -> None:
        assert self.snapshot is not None
        try:
            self.snapshot.save(jobs)
            if knowledge is not None:
                self.snapshot.save_knowledge(knowledge)
        except Exception:
            self._dirty = True
            raise

    # -- response handling --------------------------------------------------

    def _handle_response(self, response: JobResponse, summary: RunnerSummary) -> None:
        job = response.job
        if self.store.get(job.id) is None:
            logger.info(
                "Job %s (%s) was removed while running; result dropped",
                job.id,
                job.next_step,
            )
            return
        if not response.success:
            error = response.error or "Unknown error"
            logger.warning("Job %s (%s) failed: %s", job.id, job.next_step, error)
            self._record_failure(self.store.fail(job.id, error), summary)
            self._notify(ErrorCode.LLM_ERROR, f"{job.next_step}: {error}", job.id)
            return

        try:
            handler = self.router.resolve(job.next_step)
        except UnknownStepError as error:
            logger.error("Job %s has no handler: %s", job.id, error)
            self._record_failure(self.store.fail(job.id, str(error), permanent=True), summary)
            self._notify(ErrorCode.HANDLER_NOT_FOUND, str(error), job.id)
            return

        try:
            handler(response, self.router.deps)
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            logger.exception("Handler %s failed for job %s", job.next_step, job.id)
            self._record_failure(self.store.fail(job.id, message), summary)
            self._notify(ErrorCode.HANDLER_ERROR, f"{job.next_step}: {message}", job.id)
            return

        self.store.complete(job.id)
        summary.succeeded = 1

    @staticmethod
    def _record_failure(result: FailResult, summary: RunnerSummary) -> None:
        summary.failed = 1
        if result.dropped:
            summary.dead_lettered = 1
        else:
            summary.retried = 1

    def _notify(self, code: ErrorCode, message: str, job_id: str) -> None:
        if self.on_error is not None:
            self.on_error(ErrorNotice(code=code, message=message, job_id=job_id))

    # -- loop helpers -------------------------------------------------------

    def _trim_dead_letters_if_due(self) -> None:
        now = self._clock()
        interval = timedelta(seconds=self.settings.dlq_trim_interval_seconds)
        if self._last_trim_at is not None and now - self._last_trim_at < interval:
            return
        self._last_trim_at = now
        trimmed = self.store.trim_dead_lettered(
            self.settings.dlq_max_age_days,
            self.settings.dlq_max_count,
        )
        if trimmed:
            logger.info("Trimmed %d dead-lettered job(s)", trimmed)

    def _has_pending(self) -> bool:
        if self.store.is_paused():
            return False
        return bool(self.store.list_jobs(JobState.PENDING))

    async def _sleep_until_woken(self) -> None:
        timeout = self.settings.idle_poll_seconds
        ready_at = self.store.next_ready_at()
        if ready_at is not None:
            timeout = max(0.0, (ready_at - self._clock()).total_seconds())
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except TimeoutError:
            pass

    def _on_store_change(self) -> None:
        self._dirty = True
        self._wake.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.stop)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
