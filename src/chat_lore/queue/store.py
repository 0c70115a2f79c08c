"""In-memory job store with retry backoff and a dead-letter queue."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from chat_lore.queue.failure_classifier import classify_failure
from chat_lore.queue.models import FailResult, Job, JobPriority, JobSpec, JobState
from chat_lore.timeutil import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE = timedelta(seconds=2)
DEFAULT_BACKOFF_MAX = timedelta(seconds=30)

_RECOVER_FIELDS = frozenset({"attempts", "priority", "model", "system", "user", "retry_after"})


def compute_backoff(
    attempts: int,
    *,
    base: timedelta = DEFAULT_BACKOFF_BASE,
    cap: timedelta = DEFAULT_BACKOFF_MAX,
) -> timedelta:
    """Exponential backoff: `base * 2**(attempts-1)`, capped."""

    exponent = max(attempts, 1) - 1
    # Keep the multiplier bounded so huge attempt counts do not overflow timedelta.
    if exponent >= 32:
        return cap
    return min(base * (2**exponent), cap)


class JobStore:
    """Owns every job and its lifecycle transitions.

    Each method is one synchronous step over the in-memory collection, so
    callers on a single asyncio loop never need extra locking. The collection
    is a dict keyed by job id; its insertion order breaks priority ties.
    """

    def __init__(
        self,
        *,
        backoff_base: timedelta = DEFAULT_BACKOFF_BASE,
        backoff_max: timedelta = DEFAULT_BACKOFF_MAX,
        clock: Callable[[], datetime] = utc_now,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._on_change = on_change
        self._jobs: dict[str, Job] = {}
        self._paused = False

    def set_change_listener(self, listener: Callable[[], None] | None) -> None:
        self._on_change = listener

    # -- snapshot -----------------------------------------------------------

    def load(self, jobs: Iterable[Job]) -> None:
        """Replace store contents from a snapshot.

        A job found in `processing` belonged to a process that died mid-call;
        it goes back to `pending` so the single-flight slot is free.
        """

        self._jobs = {}
        recovered = 0
        for job in jobs:
            restored = _copy(job)
            if restored.state == JobState.PROCESSING:
                restored.state = JobState.PENDING
                recovered += 1
            self._jobs[restored.id] = restored
        if recovered:
            logger.info("Reset %d orphaned processing job(s) to pending", recovered)
        self._changed()

    def export(self) -> list[Job]:
        return [_copy(job) for job in self._jobs.values()]

    # -- queue --------------------------------------------------------------

    def enqueue(self, spec: JobSpec) -> str:
        job_id = str(uuid4())
        self._jobs[job_id] = Job(
            id=job_id,
            kind=spec.kind,
            priority=spec.priority,
            system=spec.system,
            user=spec.user,
            next_step=spec.next_step,
            payload=dict(spec.payload),
            state=JobState.PENDING,
            attempts=0,
            created_at=self._clock(),
            model=spec.model,
        )
        self._changed()
        return job_id

    def claim_highest(self) -> Job | None:
        """Mark the best pending job as processing and return a copy.

        Backoff is not consulted here; check `next_ready_at` first.
        """

        job = self._best_pending()
        if job is None:
            return None
        job.state = JobState.PROCESSING
        self._changed()
        return _copy(job)

    def next_ready_at(self) -> datetime | None:
        job = self._best_pending()
        if job is None:
            return None
        return job.retry_after

    def complete(self, job_id: str) -> None:
        if self._jobs.pop(job_id, None) is not None:
            self._changed()

    def fail(
        self,
        job_id: str,
        error: str | None = None,
        permanent: bool = False,
    ) -> FailResult:
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("fail() for unknown job %s ignored", job_id)
            return FailResult(dropped=False)

        now = self._clock()
        job.attempts += 1
        job.last_attempt_at = now
        if error:
            job.payload["last_error"] = error

        if error is None and not permanent:
            job.state = JobState.PENDING
            self._changed()
            return FailResult(dropped=False)

        if permanent or classify_failure(error).permanent:
            job.state = JobState.DEAD_LETTERED
            job.retry_after = None
            logger.warning(
                "Job %s (%s) dead-lettered after %d attempt(s): %s",
                job.id,
                job.next_step,
                job.attempts,
                error or "permanent failure",
            )
            self._changed()
            return FailResult(dropped=True)

        delay = compute_backoff(job.attempts, base=self.backoff_base, cap=self.backoff_max)
        job.state = JobState.PENDING
        job.retry_after = now + delay
        self._changed()
        return FailResult(dropped=False, retry_delay=delay)

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._changed()

    def is_paused(self) -> bool:
        return self._paused

    def length(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state != JobState.DEAD_LETTERED)

    def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return _copy(job) if job is not None else None

    def list_jobs(self, state: JobState | None = None) -> list[Job]:
        return [
            _copy(job) for job in self._jobs.values() if state is None or job.state == state
        ]

    def clear_by_tag_and_subject(self, subject_id: str, next_step: str) -> list[str]:
        """Drop live jobs for one subject and handler, e.g. a superseded draft."""

        removed = [
            job.id
            for job in self._jobs.values()
            if job.state != JobState.DEAD_LETTERED
            and job.next_step == next_step
            and job.payload.get("subject_id") == subject_id
        ]
        for job_id in removed:
            del self._jobs[job_id]
        if removed:
            self._changed()
        return removed

    def clear(self) -> int:
        """Drop every live job; the dead-letter queue is kept."""

        removed = [
            job_id
            for job_id, job in self._jobs.items()
            if job.state != JobState.DEAD_LETTERED
        ]
        for job_id in removed:
            del self._jobs[job_id]
        if removed:
            self._changed()
        return len(removed)

    # -- dead-letter queue --------------------------------------------------

    def dlq_length(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state == JobState.DEAD_LETTERED)

    def list_dead_lettered(self) -> list[Job]:
        return self.list_jobs(JobState.DEAD_LETTERED)

    def recover(self, job_id: str, **overrides: Any) -> bool:
        """Move a dead-lettered job back to pending with a fresh attempt count."""

        unknown = set(overrides) - _RECOVER_FIELDS
        if unknown:
            raise ValueError(f"Unsupported recover override(s): {', '.join(sorted(unknown))}")
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.DEAD_LETTERED:
            return False

        job.state = JobState.PENDING
        job.attempts = int(overrides.get("attempts", 0))
        job.retry_after = overrides.get("retry_after")
        if "priority" in overrides:
            job.priority = JobPriority(overrides["priority"])
        for name in ("model", "system", "user"):
            if name in overrides:
                setattr(job, name, overrides[name])
        self._changed()
        return True

    def trim_dead_lettered(self, max_age_days: int, max_count: int) -> int:
        """Drop expired dead-lettered jobs, then the oldest beyond `max_count`."""

        cutoff = self._clock() - timedelta(days=max_age_days)
        dead = sorted(
            (job for job in self._jobs.values() if job.state == JobState.DEAD_LETTERED),
            key=lambda job: job.created_at,
        )
        expired = [job.id for job in dead if job.created_at < cutoff]
        survivors = [job.id for job in dead if job.created_at >= cutoff]
        overflow = survivors[: max(0, len(survivors) - max_count)]

        removed = [*expired, *overflow]
        for job_id in removed:
            del self._jobs[job_id]
        if removed:
            self._changed()
        return len(removed)

    # -- internals ----------------------------------------------------------

    def _best_pending(self) -> Job | None:
        if self._paused:
            return None
        best: Job | None = None
        for job in self._jobs.values():
            if job.state != JobState.PENDING:
                continue
            if best is None or job.priority.rank < best.priority.rank:
                best = job
        return best

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


def _copy(job: Job) -> Job:
    return replace(job, payload=dict(job.payload))
