"""Controllers for chat-lore CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from chat_lore.config import Settings
from chat_lore.extraction.context import Message, build_context
from chat_lore.extraction.handlers import HandlerDeps
from chat_lore.extraction.orchestrators import ExtractionOrchestrator
from chat_lore.extraction.prompts import DefaultPromptBuilder
from chat_lore.extraction.router import ResponseRouter
from chat_lore.knowledge.models import Category
from chat_lore.llm.transport import LlmTransport, OpenAICompatibleTransport
from chat_lore.queue.executor import JobExecutor
from chat_lore.queue.models import Job, JobState
from chat_lore.queue.runner import ErrorNotice, QueueRunner, RunnerSummary
from chat_lore.queue.snapshot import SnapshotStore
from chat_lore.queue.store import JobStore
from chat_lore.timeutil import from_iso

logger = logging.getLogger(__name__)

TransportFactory = Callable[[Settings], LlmTransport]


@dataclass(slots=True)
class ExtractCommand:
    """CLI input for queueing the four scans over a message file."""

    db_path: Path | None
    messages_path: Path
    subject_id: str
    subject_name: str | None
    analyze_from: datetime | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    state: str | None


@dataclass(slots=True)
class QueueJobCommand:
    """CLI input for single-job operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class QueueTrimCommand:
    db_path: Path | None
    max_age_days: int | None
    max_count: int | None


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class KnowledgeListCommand:
    db_path: Path | None
    category: str | None


class ChatLoreCliController:
    """Coordinates extraction, worker, and queue inspection CLI operations."""

    def __init__(self, transport_factory: TransportFactory | None = None) -> None:
        self.transport_factory = transport_factory or _http_transport

    def extract(self, command: ExtractCommand) -> list[str]:
        settings = _settings(command.db_path)
        messages = load_messages(command.messages_path)
        context = build_context(
            subject_id=command.subject_id,
            subject_display_name=command.subject_name or command.subject_id,
            messages=messages,
            analyze_from=command.analyze_from,
        )
        if not context.messages_analyze:
            return [f"No messages to analyze in {command.messages_path}"]

        with _snapshot(settings) as snapshot:
            store = _load_store(settings, snapshot)
            knowledge = snapshot.load_knowledge()
            orchestrator = ExtractionOrchestrator(
                store=store,
                knowledge=knowledge,
                prompts=DefaultPromptBuilder(),
                model=settings.llm.default_model or None,
            )
            job_ids = orchestrator.queue_chunked_scans(
                context,
                settings.llm.extraction_max_tokens,
            )
            snapshot.save(store.export())

        lines = [
            f"Queued {len(job_ids)} scan job(s) for {context.subject_id}: "
            f"context={len(context.messages_context)} analyze={len(context.messages_analyze)}",
        ]
        lines.extend(f"  {job_id}" for job_id in job_ids)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        errors: list[ErrorNotice] = []
        with _snapshot(settings) as snapshot:
            summary = asyncio.run(
                self._run_worker(settings, snapshot, command, errors.append),
            )
            remaining = len(snapshot.load())

        lines = [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"dead_lettered={summary.dead_lettered} idle_polls={summary.idle_polls}",
            f"Jobs remaining: {remaining}",
        ]
        lines.extend(
            f"  {notice.code.value} {notice.job_id}: {notice.message}" for notice in errors
        )
        return lines

    def list_jobs(self, command: QueueListCommand) -> list[str]:
        settings = _settings(command.db_path)
        state = JobState(command.state) if command.state else None
        with _snapshot(settings) as snapshot:
            store = _load_store(settings, snapshot)
        jobs = store.list_jobs(state)
        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(_job_line(job) for job in jobs)
        return lines

    def list_dead_letters(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _snapshot(settings) as snapshot:
            store = _load_store(settings, snapshot)
        jobs = store.list_dead_lettered()
        lines = [f"Dead-lettered jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(_job_line(job))
            lines.append(f"    error={job.last_error or '-'}")
        return lines

    def recover(self, command: QueueJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _snapshot(settings) as snapshot:
            store = _load_store(settings, snapshot)
            if not store.recover(command.job_id):
                return [f"Job is not dead-lettered: {command.job_id}"]
            snapshot.save(store.export())
        return [f"Job recovered: {command.job_id}"]

    def trim(self, command: QueueTrimCommand) -> list[str]:
        settings = _settings(command.db_path)
        max_age_days = (
            command.max_age_days
            if command.max_age_days is not None
            else settings.queue.dlq_max_age_days
        )
        max_count = (
            command.max_count if command.max_count is not None else settings.queue.dlq_max_count
        )
        with _snapshot(settings) as snapshot:
            store = _load_store(settings, snapshot)
            removed = store.trim_dead_lettered(max_age_days, max_count)
            snapshot.save(store.export())
        return [
            f"Trimmed {removed} dead-lettered job(s) "
            f"(max_age_days={max_age_days} max_count={max_count})",
        ]

    def clear(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _snapshot(settings) as snapshot:
            store = _load_store(settings, snapshot)
            removed = store.clear()
            snapshot.save(store.export())
        return [f"Cleared {removed} job(s); dead-lettered jobs kept: {store.dlq_length()}"]

    def list_knowledge(self, command: KnowledgeListCommand) -> list[str]:
        settings = _settings(command.db_path)
        categories = [Category(command.category)] if command.category else list(Category)
        with _snapshot(settings) as snapshot:
            knowledge = snapshot.load_knowledge()

        lines: list[str] = []
        for category in categories:
            items = knowledge.list_items(category)
            lines.append(f"{category.plural.capitalize()}: {len(items)}")
            for item in items:
                lines.append(
                    f"  {item.id} name={item.name!r} sentiment={item.sentiment:+.2f} "
                    f"learned_by={item.learned_by or '-'}",
                )
                lines.append(f"    {item.description}")
        return lines

    async def _run_worker(
        self,
        settings: Settings,
        snapshot: SnapshotStore,
        command: WorkerCommand,
        on_error: Callable[[ErrorNotice], None],
    ) -> RunnerSummary:
        store = _load_store(settings, snapshot)
        knowledge = snapshot.load_knowledge()
        transport = self.transport_factory(settings)
        orchestrator = ExtractionOrchestrator(
            store=store,
            knowledge=knowledge,
            prompts=DefaultPromptBuilder(),
            model=settings.llm.default_model or None,
        )
        runner = QueueRunner(
            store=store,
            executor=JobExecutor(
                transport=transport,
                default_model=settings.llm.default_model or None,
            ),
            router=ResponseRouter(HandlerDeps(knowledge=knowledge, orchestrator=orchestrator)),
            settings=settings.queue,
            snapshot=snapshot,
            knowledge=knowledge,
            on_error=on_error,
        )
        try:
            if command.once:
                summary = await runner.run_once()
                runner.flush_snapshot()
                return summary
            return await runner.run_loop(max_jobs=command.max_jobs, stop_when_idle=True)
        finally:
            aclose = getattr(transport, "aclose", None)
            if aclose is not None:
                await aclose()


def load_messages(path: Path) -> list[Message]:
    """Read messages from a JSON list, or an object with a `messages` list."""

    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("messages", [])
    if not isinstance(raw, list):
        raise ValueError(f"Expected a list of messages in {path}")
    messages = [Message.from_dict(item) for item in raw]
    return sorted(messages, key=lambda message: message.timestamp)


def parse_timestamp(value: str) -> datetime:
    return from_iso(value)


def _job_line(job: Job) -> str:
    retry_after = job.retry_after.isoformat() if job.retry_after else "-"
    return (
        f"  {job.id} step={job.next_step} state={job.state.value} "
        f"priority={job.priority.value} attempts={job.attempts} retry_after={retry_after}"
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _load_store(settings: Settings, snapshot: SnapshotStore) -> JobStore:
    store = JobStore(
        backoff_base=timedelta(milliseconds=settings.queue.backoff_base_ms),
        backoff_max=timedelta(milliseconds=settings.queue.backoff_max_ms),
    )
    store.load(snapshot.load())
    return store


def _http_transport(settings: Settings) -> LlmTransport:
    return OpenAICompatibleTransport(settings.llm)


@contextmanager
def _snapshot(settings: Settings) -> Iterator[SnapshotStore]:
    snapshot = SnapshotStore(settings.db_path)
    snapshot.init_schema()
    try:
        yield snapshot
    finally:
        snapshot.close()
