"""SQLite snapshot of the job store and knowledge base, backed by SQLModel."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, Text, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, delete, select

from chat_lore.knowledge.base import InMemoryKnowledgeBase
from chat_lore.knowledge.models import Category, item_from_dict
from chat_lore.queue.models import Job, JobKind, JobPriority, JobState

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000


class JobRow(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    position: int = Field(index=True)
    kind: str
    priority: str = Field(index=True)
    state: str = Field(index=True)
    system: str = Field(sa_column=Column(Text, nullable=False))
    user: str = Field(sa_column=Column(Text, nullable=False))
    next_step: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int = Field(default=0)
    model: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    retry_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class KnowledgeRow(SQLModel, table=True):
    __tablename__ = "knowledge_items"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    category: str = Field(index=True)
    position: int
    data_json: str = Field(sa_column=Column(Text, nullable=False))


class SnapshotStore:
    """Whole-state snapshots: every save replaces the previous contents."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = _build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[JobRow.__table__, KnowledgeRow.__table__],
        )

    def save(self, jobs: list[Job]) -> None:
        with Session(self.engine) as session:
            session.exec(delete(JobRow))
            for position, job in enumerate(jobs):
                session.add(_job_to_row(job, position))
            session.commit()
        logger.debug("Saved %d job(s) to %s", len(jobs), self.db_path)

    def load(self) -> list[Job]:
        with Session(self.engine) as session:
            rows = session.exec(select(JobRow).order_by(col(JobRow.position))).all()
            return [_row_to_job(row) for row in rows]

    def save_knowledge(self, knowledge: InMemoryKnowledgeBase) -> None:
        with Session(self.engine) as session:
            session.exec(delete(KnowledgeRow))
            for category in Category:
                for position, item in enumerate(knowledge.list_items(category)):
                    session.add(
                        KnowledgeRow(
                            id=item.id,
                            category=category.value,
                            position=position,
                            data_json=json.dumps(item.to_dict(), ensure_ascii=False),
                        ),
                    )
            session.commit()

    def load_knowledge(self) -> InMemoryKnowledgeBase:
        knowledge = InMemoryKnowledgeBase()
        with Session(self.engine) as session:
            rows = session.exec(
                select(KnowledgeRow).order_by(
                    col(KnowledgeRow.category),
                    col(KnowledgeRow.position),
                ),
            ).all()
            for row in rows:
                category = Category(row.category)
                knowledge.upsert(category, item_from_dict(category, json.loads(row.data_json)))
        return knowledge


def _job_to_row(job: Job, position: int) -> JobRow:
    return JobRow(
        id=job.id,
        position=position,
        kind=job.kind.value,
        priority=job.priority.value,
        state=job.state.value,
        system=job.system,
        user=job.user,
        next_step=job.next_step,
        payload_json=json.dumps(job.payload, ensure_ascii=False),
        attempts=job.attempts,
        model=job.model,
        created_at=_to_db_datetime(job.created_at),
        last_attempt_at=_to_db_datetime(job.last_attempt_at) if job.last_attempt_at else None,
        retry_after=_to_db_datetime(job.retry_after) if job.retry_after else None,
    )


def _row_to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        kind=JobKind(row.kind),
        priority=JobPriority(row.priority),
        system=row.system,
        user=row.user,
        next_step=row.next_step,
        payload=json.loads(row.payload_json),
        state=JobState(row.state),
        attempts=row.attempts,
        created_at=_to_utc_aware_datetime(row.created_at),
        last_attempt_at=(
            _to_utc_aware_datetime(row.last_attempt_at) if row.last_attempt_at else None
        ),
        retry_after=_to_utc_aware_datetime(row.retry_after) if row.retry_after else None,
        model=row.model,
    )


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
