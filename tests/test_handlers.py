from __future__ import annotations

from typing import Any

import allure
import pytest

from chat_lore.extraction.context import ExtractionContext
from chat_lore.extraction.handlers import (
    HandlerDeps,
    calculate_exposure,
    handle_fact_scan,
    handle_item_match,
    handle_item_update,
    handle_person_scan,
    handle_topic_scan,
)
from chat_lore.extraction.orchestrators import ExtractionOrchestrator
from chat_lore.extraction.payloads import MatchPayload, UpdatePayload, decode_payload
from chat_lore.extraction.prompts import DefaultPromptBuilder, PromptValidationError
from chat_lore.knowledge.base import InMemoryKnowledgeBase
from chat_lore.knowledge.models import (
    Category,
    Fact,
    Person,
    Topic,
    Trait,
    ValidationLevel,
)
from chat_lore.queue.models import Job, JobResponse, NextStep
from chat_lore.queue.store import JobStore

pytestmark = [
    allure.epic("Knowledge Extraction"),
    allure.feature("Response Handlers"),
]


@pytest.fixture()
def deps() -> HandlerDeps:
    knowledge = InMemoryKnowledgeBase()
    orchestrator = ExtractionOrchestrator(
        store=JobStore(),
        knowledge=knowledge,
        prompts=DefaultPromptBuilder(),
    )
    return HandlerDeps(knowledge=knowledge, orchestrator=orchestrator)


def _respond(job: Job, parsed: Any) -> JobResponse:
    return JobResponse(job=job, success=True, content="{}", parsed=parsed)


def _claim(deps: HandlerDeps, job_id: str) -> Job:
    job = deps.orchestrator.store.get(job_id)
    assert job is not None
    return job


def _pending_jobs(deps: HandlerDeps, step: NextStep) -> list[Job]:
    return [job for job in deps.orchestrator.store.list_jobs() if job.next_step == step.value]


def _match_job(deps: HandlerDeps, context: ExtractionContext, category: Category) -> Job:
    scan_id = deps.orchestrator.queue_scan(category, context)
    scan_job = _claim(deps, scan_id)
    key = category.plural
    handler = {
        Category.FACT: handle_fact_scan,
        Category.TOPIC: handle_topic_scan,
        Category.PERSON: handle_person_scan,
    }[category]
    handler(
        _respond(scan_job, {key: [{"typeHint": "Location", "valueHint": "Chicago"}]}),
        deps,
    )
    (match_job,) = _pending_jobs(deps, NextStep.ITEM_MATCH)
    return match_job


def _update_job(deps: HandlerDeps, context: ExtractionContext, **kwargs: Any) -> Job:
    job_id = deps.orchestrator.queue_item_update(context=context, **kwargs)
    return _claim(deps, job_id)


# -- scan -----------------------------------------------------------------------


def test_scan_queues_one_match_per_candidate(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    match_job = _match_job(deps, context, Category.FACT)

    assert match_job.payload["value_hint"] == "Chicago"
    assert match_job.payload["type_hint"] == "Location"
    payload = decode_payload(match_job.next_step, match_job.payload)
    assert isinstance(payload, MatchPayload)
    assert payload.candidate_type == Category.FACT
    assert payload.item_name == "Location"
    assert payload.item_value == "Chicago"


def test_person_scan_accepts_persons_key(deps: HandlerDeps, context: ExtractionContext) -> None:
    scan_job = _claim(deps, deps.orchestrator.queue_person_scan(context))

    handle_person_scan(
        _respond(
            scan_job,
            {
                "persons": [
                    {"type_hint": "Sister", "value_hint": "Maya", "reason": "visits"},
                    {"reason": "no hints at all"},
                ],
            },
        ),
        deps,
    )

    (match_job,) = _pending_jobs(deps, NextStep.ITEM_MATCH)
    payload = decode_payload(match_job.next_step, match_job.payload)
    assert isinstance(payload, MatchPayload)
    assert payload.item_name == "Maya"
    assert payload.candidate.reason == "visits"


@pytest.mark.parametrize("parsed", [{}, {"facts": []}, {"facts": "none"}, None])
def test_scan_without_candidates_is_a_noop(
    deps: HandlerDeps,
    context: ExtractionContext,
    parsed: Any,
) -> None:
    scan_job = _claim(deps, deps.orchestrator.queue_fact_scan(context))

    handle_fact_scan(_respond(scan_job, parsed), deps)

    assert _pending_jobs(deps, NextStep.ITEM_MATCH) == []


def test_scan_with_an_invalid_candidate_queues_no_matches(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    scan_job = _claim(deps, deps.orchestrator.queue_fact_scan(context))
    parsed = {
        "facts": [
            {"typeHint": "Location", "valueHint": "Chicago"},
            {"typeHint": "   "},
        ],
    }

    with pytest.raises(PromptValidationError):
        handle_fact_scan(_respond(scan_job, parsed), deps)

    assert _pending_jobs(deps, NextStep.ITEM_MATCH) == []


# -- match ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "parsed",
    [{}, {"name": ""}, {"name": "Not Found"}, {"name": "none"}, {"name": "NEW"}],
)
def test_match_sentinels_queue_new_item_update(
    deps: HandlerDeps,
    context: ExtractionContext,
    parsed: dict[str, Any],
) -> None:
    match_job = _match_job(deps, context, Category.FACT)

    handle_item_match(_respond(match_job, parsed), deps)

    (update_job,) = _pending_jobs(deps, NextStep.ITEM_UPDATE)
    payload = decode_payload(update_job.next_step, update_job.payload)
    assert isinstance(payload, UpdatePayload)
    assert payload.is_new_item
    assert payload.item_name == "Location"
    assert payload.candidate_type == Category.FACT


def test_match_by_name_targets_existing_item_in_its_own_category(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    deps.knowledge.upsert_topic(
        Topic(id="topic-1", name="Chicago", description="Windy city", sentiment=0.3),
    )
    match_job = _match_job(deps, context, Category.FACT)

    handle_item_match(_respond(match_job, {"name": "Chicago", "confidence": 0.8}), deps)

    (update_job,) = _pending_jobs(deps, NextStep.ITEM_UPDATE)
    payload = decode_payload(update_job.next_step, update_job.payload)
    assert isinstance(payload, UpdatePayload)
    assert not payload.is_new_item
    assert payload.existing_item_id == "topic-1"
    assert payload.candidate_type == Category.TOPIC


def test_match_honours_matched_guid(deps: HandlerDeps, context: ExtractionContext) -> None:
    deps.knowledge.upsert_fact(
        Fact(id="fact-1", name="Home city", description="Chicago", sentiment=0.0),
    )
    match_job = _match_job(deps, context, Category.FACT)

    handle_item_match(_respond(match_job, {"matched_guid": "fact-1"}), deps)

    (update_job,) = _pending_jobs(deps, NextStep.ITEM_UPDATE)
    assert update_job.payload["existing_item_id"] == "fact-1"


def test_match_unknown_name_is_treated_as_new(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    match_job = _match_job(deps, context, Category.FACT)

    handle_item_match(_respond(match_job, {"name": "Somewhere else"}), deps)

    (update_job,) = _pending_jobs(deps, NextStep.ITEM_UPDATE)
    assert update_job.payload["is_new_item"] is True


def test_match_skips_human_validated_fact(deps: HandlerDeps, context: ExtractionContext) -> None:
    deps.knowledge.upsert_fact(
        Fact(
            id="fact-1",
            name="Location",
            description="Chicago",
            sentiment=0.0,
            validated=ValidationLevel.HUMAN,
        ),
    )
    match_job = _match_job(deps, context, Category.FACT)

    handle_item_match(_respond(match_job, {"name": "Location"}), deps)

    assert _pending_jobs(deps, NextStep.ITEM_UPDATE) == []


# -- update ---------------------------------------------------------------------


def test_update_creates_new_person_with_exposure(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    update_job = _update_job(
        deps,
        context,
        category=Category.PERSON,
        matched_name=None,
        item_name="Maya",
        item_value="Sister",
    )

    handle_item_update(
        _respond(
            update_job,
            {
                "name": "Maya",
                "description": "Ada's sister who visits often",
                "sentiment": 0.7,
                "relationship": "Sister",
                "exposureImpact": "medium",
            },
        ),
        deps,
    )

    (person,) = deps.knowledge.list_items(Category.PERSON)
    assert isinstance(person, Person)
    assert person.name == "Maya"
    assert person.relationship == "Sister"
    assert person.exposure_current == pytest.approx(0.6)
    assert person.exposure_desired == pytest.approx(0.5)
    assert person.learned_by == "persona-1"


def test_update_existing_trait_keeps_id_and_learned_by(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    deps.knowledge.upsert_trait(
        Trait(
            id="trait-1",
            name="Curious",
            description="Asks questions",
            sentiment=0.2,
            learned_by="persona-0",
        ),
    )
    update_job = _update_job(
        deps,
        context,
        category=Category.TRAIT,
        matched_name="Curious",
        item_name="Curious",
        item_value="asks a lot",
    )

    handle_item_update(
        _respond(
            update_job,
            {"name": "Curious", "description": "Asks many questions", "sentiment": 0.4},
        ),
        deps,
    )

    (trait,) = deps.knowledge.list_items(Category.TRAIT)
    assert isinstance(trait, Trait)
    assert trait.id == "trait-1"
    assert trait.description == "Asks many questions"
    assert trait.strength == pytest.approx(0.5)
    assert trait.learned_by == "persona-0"


def test_update_topic_category_falls_back_to_existing(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    deps.knowledge.upsert_topic(
        Topic(id="topic-1", name="Chess", description="Plays", sentiment=0.5, category="Hobby"),
    )
    update_job = _update_job(
        deps,
        context,
        category=Category.TOPIC,
        matched_name="Chess",
        item_name="Chess",
        item_value="openings",
    )

    handle_item_update(
        _respond(
            update_job,
            {
                "name": "Chess",
                "description": "Studies openings",
                "sentiment": 0.6,
                "exposure_impact": "high",
                "exposure_desired": 0.8,
            },
        ),
        deps,
    )

    topic = deps.knowledge.get(Category.TOPIC, "topic-1")
    assert isinstance(topic, Topic)
    assert topic.category == "Hobby"
    assert topic.exposure_current == pytest.approx(0.9)
    assert topic.exposure_desired == pytest.approx(0.8)


def test_update_with_id_from_other_category_creates_new_item(
    deps: HandlerDeps,
    context: ExtractionContext,
) -> None:
    deps.knowledge.upsert_topic(Topic(id="topic-1", name="Chicago", description="d", sentiment=0))
    update_job = _update_job(
        deps,
        context,
        category=Category.TOPIC,
        matched_name="Chicago",
        item_name="Chicago",
        item_value="city",
    )
    update_job.payload["candidate_type"] = Category.FACT.value

    handle_item_update(
        _respond(update_job, {"name": "Home", "description": "Chicago", "sentiment": 0.1}),
        deps,
    )

    (fact,) = deps.knowledge.list_items(Category.FACT)
    assert fact.id != "topic-1"
    assert fact.learned_by == "persona-1"
    assert deps.knowledge.get(Category.TOPIC, "topic-1") is not None


@pytest.mark.parametrize(
    "parsed",
    [
        {},
        {"description": "no name", "sentiment": 0.1},
        {"name": "Home", "sentiment": 0.1},
        {"name": "Home", "description": "Chicago"},
        {"name": "Home", "description": "Chicago", "sentiment": "positive"},
        {"name": "Home", "description": "Chicago", "sentiment": True},
        {"name": "  ", "description": "Chicago", "sentiment": 0.1},
        {"name": "Home", "description": ["Chicago"], "sentiment": 0.1},
    ],
)
def test_update_with_missing_or_invalid_fields_changes_nothing(
    deps: HandlerDeps,
    context: ExtractionContext,
    parsed: dict[str, Any],
) -> None:
    update_job = _update_job(
        deps,
        context,
        category=Category.FACT,
        matched_name=None,
        item_name="Home",
        item_value="Chicago",
    )

    handle_item_update(_respond(update_job, parsed), deps)

    assert deps.knowledge.count() == 0


@pytest.mark.parametrize(
    ("impact", "expected"),
    [("high", 0.9), ("medium", 0.6), ("low", 0.3), ("none", 0.1), ("extreme", 0.5), (None, 0.5)],
)
def test_exposure_levels(impact: object, expected: float) -> None:
    assert calculate_exposure(impact) == pytest.approx(expected)
