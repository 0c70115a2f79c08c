from __future__ import annotations

import json
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import FakeClock, ScriptedTransport

from chat_lore.config import QueueSettings
from chat_lore.extraction.context import ExtractionContext
from chat_lore.extraction.handlers import HandlerDeps
from chat_lore.extraction.orchestrators import ExtractionOrchestrator
from chat_lore.extraction.prompts import DefaultPromptBuilder
from chat_lore.extraction.router import ResponseRouter, UnknownStepError
from chat_lore.knowledge.base import InMemoryKnowledgeBase
from chat_lore.knowledge.models import Category
from chat_lore.llm.transport import LlmTransportError
from chat_lore.queue.executor import JobExecutor
from chat_lore.queue.models import JobKind, JobPriority, JobResponse, JobSpec, JobState, NextStep
from chat_lore.queue.runner import ErrorCode, ErrorNotice, QueueRunner
from chat_lore.queue.snapshot import SnapshotStore
from chat_lore.queue.store import JobStore

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Runner"),
]


class Harness:
    def __init__(
        self,
        clock: FakeClock,
        transport: ScriptedTransport,
        *,
        snapshot: SnapshotStore | None = None,
    ) -> None:
        self.clock = clock
        self.transport = transport
        self.knowledge = InMemoryKnowledgeBase()
        self.store = JobStore(clock=clock)
        self.orchestrator = ExtractionOrchestrator(
            store=self.store,
            knowledge=self.knowledge,
            prompts=DefaultPromptBuilder(),
        )
        self.notices: list[ErrorNotice] = []
        self.runner = QueueRunner(
            store=self.store,
            executor=JobExecutor(transport=transport),
            router=ResponseRouter(
                HandlerDeps(knowledge=self.knowledge, orchestrator=self.orchestrator),
            ),
            settings=QueueSettings(idle_poll_seconds=0.01, snapshot_debounce_seconds=0.0),
            snapshot=snapshot,
            knowledge=self.knowledge,
            on_error=self.notices.append,
            clock=clock,
        )


def test_router_rejects_unknown_tags() -> None:
    router = ResponseRouter(
        HandlerDeps(
            knowledge=InMemoryKnowledgeBase(),
            orchestrator=ExtractionOrchestrator(
                store=JobStore(),
                knowledge=InMemoryKnowledgeBase(),
                prompts=DefaultPromptBuilder(),
            ),
        ),
    )

    for step in NextStep:
        assert callable(router.resolve(step.value))
    with pytest.raises(UnknownStepError, match="mysteryStep"):
        router.resolve("mysteryStep")


def test_router_dispatch_runs_registered_handler(clock: FakeClock) -> None:
    seen: list[str] = []
    store = JobStore(clock=clock)
    knowledge = InMemoryKnowledgeBase()
    deps = HandlerDeps(
        knowledge=knowledge,
        orchestrator=ExtractionOrchestrator(
            store=store,
            knowledge=knowledge,
            prompts=DefaultPromptBuilder(),
        ),
    )
    router = ResponseRouter(
        deps,
        handlers={NextStep.FACT_SCAN: lambda response, _deps: seen.append(response.job.id)},
    )
    job_id = store.enqueue(
        JobSpec(
            kind=JobKind.JSON,
            priority=JobPriority.NORMAL,
            system="s",
            user="u",
            next_step=NextStep.FACT_SCAN.value,
        ),
    )
    job = store.claim_highest()
    assert job is not None

    router.dispatch(JobResponse(job=job, success=True, content="{}", parsed={}))

    assert seen == [job_id]
    with pytest.raises(UnknownStepError):
        router.resolve(NextStep.TRAIT_SCAN.value)


@pytest.mark.asyncio
async def test_pipeline_runs_scan_match_update_into_knowledge(
    clock: FakeClock,
    context: ExtractionContext,
) -> None:
    transport = ScriptedTransport(
        json.dumps({"people": [{"typeHint": "Sister", "valueHint": "Maya"}]}),
        json.dumps({"name": "Not Found"}),
        json.dumps(
            {
                "name": "Maya",
                "description": "Ada's sister",
                "sentiment": 0.8,
                "relationship": "Sister",
                "exposureImpact": "medium",
            },
        ),
    )
    harness = Harness(clock, transport)
    harness.orchestrator.queue_person_scan(context)

    summary = await harness.runner.run_loop(stop_when_idle=True)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert harness.store.length() == 0
    (person,) = harness.knowledge.list_items(Category.PERSON)
    assert person.name == "Maya"
    assert person.learned_by == "persona-1"
    assert harness.notices == []


@pytest.mark.asyncio
async def test_llm_failure_is_retried_after_backoff(
    clock: FakeClock,
    context: ExtractionContext,
) -> None:
    transport = ScriptedTransport("not json", json.dumps({"facts": []}))
    harness = Harness(clock, transport)
    job_id = harness.orchestrator.queue_fact_scan(context)

    first = await harness.runner.run_once()
    waiting = await harness.runner.run_once()
    clock.advance(seconds=2)
    second = await harness.runner.run_once()

    assert (first.processed, first.failed, first.retried) == (1, 1, 1)
    assert (waiting.processed, waiting.idle_polls) == (0, 1)
    assert second.succeeded == 1
    assert harness.store.get(job_id) is None
    assert [notice.code for notice in harness.notices] == [ErrorCode.LLM_ERROR]


@pytest.mark.asyncio
async def test_permanent_llm_error_dead_letters(
    clock: FakeClock,
    context: ExtractionContext,
) -> None:
    transport = ScriptedTransport(LlmTransportError("LLM API error (401): Unauthorized"))
    harness = Harness(clock, transport)
    job_id = harness.orchestrator.queue_fact_scan(context)

    summary = await harness.runner.run_once()

    assert summary.dead_lettered == 1
    job = harness.store.get(job_id)
    assert job is not None
    assert job.state == JobState.DEAD_LETTERED
    assert job.last_error == "LLM API error (401): Unauthorized"


@pytest.mark.asyncio
async def test_unknown_step_dead_letters_without_retry(clock: FakeClock) -> None:
    harness = Harness(clock, ScriptedTransport('{"ok": true}'))
    job_id = harness.store.enqueue(
        JobSpec(
            kind=JobKind.JSON,
            priority=JobPriority.HIGH,
            system="s",
            user="u",
            next_step="mysteryStep",
        ),
    )

    summary = await harness.runner.run_once()

    assert summary.dead_lettered == 1
    job = harness.store.get(job_id)
    assert job is not None
    assert job.state == JobState.DEAD_LETTERED
    assert [notice.code for notice in harness.notices] == [ErrorCode.HANDLER_NOT_FOUND]


@pytest.mark.asyncio
async def test_handler_exception_fails_job_transiently(clock: FakeClock) -> None:
    harness = Harness(clock, ScriptedTransport('{"facts": []}'))
    job_id = harness.store.enqueue(
        JobSpec(
            kind=JobKind.JSON,
            priority=JobPriority.NORMAL,
            system="s",
            user="u",
            next_step=NextStep.FACT_SCAN.value,
            payload={"unexpected": True},
        ),
    )

    summary = await harness.runner.run_once()

    assert summary.retried == 1
    job = harness.store.get(job_id)
    assert job is not None
    assert job.state == JobState.PENDING
    assert job.retry_after == clock.now + timedelta(seconds=2)
    assert [notice.code for notice in harness.notices] == [ErrorCode.HANDLER_ERROR]


@pytest.mark.asyncio
async def test_run_loop_respects_max_jobs(clock: FakeClock, context: ExtractionContext) -> None:
    transport = ScriptedTransport(*[json.dumps({"facts": []})] * 4)
    harness = Harness(clock, transport)
    harness.orchestrator.queue_all_scans(context)

    summary = await harness.runner.run_loop(max_jobs=2)

    assert summary.processed == 2
    assert harness.store.length() == 2


@pytest.mark.asyncio
async def test_stop_when_idle_returns_when_only_dead_letters_remain(clock: FakeClock) -> None:
    harness = Harness(clock, ScriptedTransport())
    job_id = harness.store.enqueue(
        JobSpec(
            kind=JobKind.JSON,
            priority=JobPriority.NORMAL,
            system="s",
            user="u",
            next_step=NextStep.FACT_SCAN.value,
        ),
    )
    harness.store.fail(job_id, "forbidden")

    summary = await harness.runner.run_loop(stop_when_idle=True)

    assert summary.processed == 0
    assert harness.store.dlq_length() == 1


@pytest.mark.asyncio
async def test_dead_letter_trim_runs_on_first_poll(clock: FakeClock) -> None:
    harness = Harness(clock, ScriptedTransport())
    job_id = harness.store.enqueue(
        JobSpec(
            kind=JobKind.JSON,
            priority=JobPriority.NORMAL,
            system="s",
            user="u",
            next_step=NextStep.FACT_SCAN.value,
        ),
    )
    harness.store.fail(job_id, "forbidden")
    clock.advance(days=30)

    await harness.runner.run_once()

    assert harness.store.dlq_length() == 0


@pytest.mark.asyncio
async def test_run_loop_saves_snapshot(
    tmp_path: Path,
    clock: FakeClock,
    context: ExtractionContext,
) -> None:
    snapshot = SnapshotStore(tmp_path / "runner.db")
    snapshot.init_schema()
    transport = ScriptedTransport(
        json.dumps({"facts": [{"typeHint": "Location", "valueHint": "Chicago"}]}),
    )
    harness = Harness(clock, transport, snapshot=snapshot)
    harness.orchestrator.queue_fact_scan(context)

    await harness.runner.run_loop(max_jobs=1)

    saved = snapshot.load()
    snapshot.close()
    assert [job.next_step for job in saved] == [NextStep.ITEM_MATCH.value]
    assert saved[0].payload["value_hint"] == "Chicago"


class ClearingTransport(ScriptedTransport):
    """Removes fact scans for the subject while the call is in flight."""

    def __init__(self, *outcomes: object) -> None:
        super().__init__(*outcomes)
        self.store: JobStore | None = None

    async def call(self, system, user, history, model):  # type: ignore[no-untyped-def]
        assert self.store is not None
        self.store.clear_by_tag_and_subject("persona-1", NextStep.FACT_SCAN.value)
        return await super().call(system, user, history, model)


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", ["not json", json.dumps({"facts": []})])
async def test_job_removed_while_running_is_not_failed_or_completed(
    clock: FakeClock,
    context: ExtractionContext,
    outcome: str,
) -> None:
    transport = ClearingTransport(outcome)
    harness = Harness(clock, transport)
    transport.store = harness.store
    harness.orchestrator.queue_fact_scan(context)

    summary = await harness.runner.run_once()

    assert summary.processed == 1
    assert (summary.succeeded, summary.failed, summary.retried) == (0, 0, 0)
    assert harness.store.length() == 0
    assert harness.store.dlq_length() == 0
    assert harness.notices == []


class ThreadRecordingSnapshot(SnapshotStore):
    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.save_threads: list[int] = []

    def save(self, jobs):  # type: ignore[no-untyped-def]
        self.save_threads.append(threading.get_ident())
        super().save(jobs)


@pytest.mark.asyncio
async def test_run_loop_writes_snapshot_off_the_event_loop_thread(
    tmp_path: Path,
    clock: FakeClock,
    context: ExtractionContext,
) -> None:
    snapshot = ThreadRecordingSnapshot(tmp_path / "runner.db")
    snapshot.init_schema()
    harness = Harness(clock, ScriptedTransport(json.dumps({"facts": []})), snapshot=snapshot)
    harness.orchestrator.queue_fact_scan(context)

    await harness.runner.run_loop(max_jobs=1)

    assert snapshot.save_threads
    assert snapshot.save_threads[0] != threading.get_ident()
    assert snapshot.load() == []
    snapshot.close()
