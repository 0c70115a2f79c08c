"""Domain models for the in-memory job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    """Expected shape of the LLM response."""

    RAW = "raw"
    JSON = "json"
    RESPONSE = "response"


class JobPriority(str, Enum):
    """Claim ordering key; no preemption."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}


class JobState(str, Enum):
    """Job lifecycle states. Completed jobs leave the store."""

    PENDING = "pending"
    PROCESSING = "processing"
    DEAD_LETTERED = "dead_lettered"


class NextStep(str, Enum):
    """Response handler that consumes a job's result."""

    FACT_SCAN = "factScan"
    TRAIT_SCAN = "traitScan"
    TOPIC_SCAN = "topicScan"
    PERSON_SCAN = "personScan"
    ITEM_MATCH = "itemMatch"
    ITEM_UPDATE = "itemUpdate"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"


@dataclass(slots=True)
class JobSpec:
    """Input payload for enqueuing a job."""

    kind: JobKind
    priority: JobPriority
    system: str
    user: str
    next_step: str
    payload: dict[str, Any] = field(default_factory=dict)
    model: str | None = None


@dataclass(slots=True)
class Job:
    """One queued unit of LLM work."""

    id: str
    kind: JobKind
    priority: JobPriority
    system: str
    user: str
    next_step: str
    payload: dict[str, Any]
    state: JobState
    attempts: int
    created_at: datetime
    last_attempt_at: datetime | None = None
    retry_after: datetime | None = None
    model: str | None = None

    @property
    def last_error(self) -> str | None:
        value = self.payload.get("last_error")
        return str(value) if value is not None else None


@dataclass(slots=True)
class FailResult:
    """Outcome of `JobStore.fail`."""

    dropped: bool
    retry_delay: timedelta | None = None


@dataclass(slots=True)
class JobResponse:
    """Result of one executor attempt, handed to the response router."""

    job: Job
    success: bool
    content: str | None
    parsed: Any = None
    error: str | None = None
    finish_reason: str | None = None
