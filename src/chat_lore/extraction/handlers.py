"""Stage handlers that turn parsed LLM responses into knowledge mutations or follow-up jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from chat_lore.extraction.orchestrators import ExtractionOrchestrator
from chat_lore.extraction.payloads import (
    MatchPayload,
    ScanCandidate,
    ScanPayload,
    UpdatePayload,
    decode_payload,
)
from chat_lore.extraction.prompts import NO_MATCH_NAME
from chat_lore.knowledge.base import KnowledgeBase
from chat_lore.knowledge.models import (
    Category,
    Fact,
    KnowledgeItem,
    Person,
    Topic,
    Trait,
    ValidationLevel,
)
from chat_lore.queue.models import JobResponse
from chat_lore.timeutil import utc_now

logger = logging.getLogger(__name__)

EXPOSURE_LEVELS = {
    "high": 0.9,
    "medium": 0.6,
    "low": 0.3,
    "none": 0.1,
}
DEFAULT_EXPOSURE = 0.5
DEFAULT_STRENGTH = 0.5
DEFAULT_RELATIONSHIP = "Unknown"

_NO_MATCH_NAMES = frozenset({NO_MATCH_NAME.casefold(), "none", "new"})
_SCAN_RESULT_KEYS = {
    Category.FACT: ("facts",),
    Category.TRAIT: ("traits",),
    Category.TOPIC: ("topics",),
    Category.PERSON: ("people", "persons"),
}


@dataclass(slots=True)
class HandlerDeps:
    knowledge: KnowledgeBase
    orchestrator: ExtractionOrchestrator


def calculate_exposure(impact: object) -> float:
    """Map an exposure impact level to a 0..1 score; unknown levels get the default."""

    if isinstance(impact, str):
        return EXPOSURE_LEVELS.get(impact.strip().lower(), DEFAULT_EXPOSURE)
    return DEFAULT_EXPOSURE


# -- stage 1 ------------------------------------------------------------------


def handle_fact_scan(response: JobResponse, deps: HandlerDeps) -> None:
    _handle_scan(Category.FACT, response, deps)


def handle_trait_scan(response: JobResponse, deps: HandlerDeps) -> None:
    _handle_scan(Category.TRAIT, response, deps)


def handle_topic_scan(response: JobResponse, deps: HandlerDeps) -> None:
    _handle_scan(Category.TOPIC, response, deps)


def handle_person_scan(response: JobResponse, deps: HandlerDeps) -> None:
    _handle_scan(Category.PERSON, response, deps)


def _handle_scan(category: Category, response: JobResponse, deps: HandlerDeps) -> None:
    payload = _decode(response, ScanPayload)
    raw_candidates = _scan_candidates(category, response.parsed)
    if not raw_candidates:
        logger.info("No %s detected for %s", category.plural, payload.context.subject_id)
        return

    candidates: list[ScanCandidate] = []
    for raw in raw_candidates:
        candidate = ScanCandidate.from_raw(raw)
        if candidate is None:
            logger.warning("Skipping malformed %s candidate: %r", category.value, raw)
            continue
        candidates.append(candidate)
    # All-or-nothing: the whole scan is retried when any prompt is invalid.
    job_ids = deps.orchestrator.queue_item_matches(category, candidates, payload.context)
    logger.info("Queued %d %s candidate(s) for matching", len(job_ids), category.value)


def _scan_candidates(category: Category, parsed: Any) -> list[Any]:
    if not isinstance(parsed, dict):
        return []
    for key in _SCAN_RESULT_KEYS[category]:
        value = parsed.get(key)
        if isinstance(value, list):
            return value
    return []


# -- stage 2 ------------------------------------------------------------------


def handle_item_match(response: JobResponse, deps: HandlerDeps) -> None:
    payload = _decode(response, MatchPayload)
    parsed = response.parsed if isinstance(response.parsed, dict) else {}

    matched_name = _matched_name(parsed)
    matched_id = _matched_id(parsed)
    found = _find_match(deps.knowledge, matched_name, matched_id)
    if found is not None:
        category, item = found
        if isinstance(item, Fact) and item.validated == ValidationLevel.HUMAN:
            logger.info("Skipping locked fact %r (human-validated)", item.name)
            return
        matched_id = item.id
        matched_name = item.name
        logger.info(
            "%s %r matched existing %s %r",
            payload.candidate_type.value,
            payload.item_name,
            category.value,
            item.name,
        )
    else:
        if matched_name or matched_id:
            logger.warning(
                "Match %r for %r not found in knowledge base; treating as new item",
                matched_name or matched_id,
                payload.item_name,
            )
        matched_name = None
        matched_id = None

    deps.orchestrator.queue_item_update(
        payload.candidate_type,
        matched_name,
        matched_id=matched_id,
        item_name=payload.item_name,
        item_value=payload.item_value,
        item_category=_optional_str(parsed.get("category")),
        context=payload.context,
    )


def _matched_name(parsed: dict[str, Any]) -> str | None:
    name = parsed.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    if name.strip().casefold() in _NO_MATCH_NAMES:
        return None
    return name.strip()


def _matched_id(parsed: dict[str, Any]) -> str | None:
    guid = parsed.get("matched_guid")
    if not isinstance(guid, str) or not guid.strip() or guid.strip().lower() == "new":
        return None
    return guid.strip()


def _find_match(
    knowledge: KnowledgeBase,
    matched_name: str | None,
    matched_id: str | None,
) -> tuple[Category, KnowledgeItem] | None:
    if matched_id:
        found = knowledge.find_by_id(matched_id)
        if found is not None:
            return found
    if matched_name:
        ref = knowledge.find_by_name_across_categories(matched_name)
        if ref is not None:
            return knowledge.find_by_id(ref.id)
    return None


# -- stage 3 ------------------------------------------------------------------


def handle_item_update(response: JobResponse, deps: HandlerDeps) -> None:
    payload = _decode(response, UpdatePayload)
    result = response.parsed
    if not isinstance(result, dict) or not result:
        logger.info("No changes needed for %r", payload.item_name)
        return

    name = result.get("name")
    description = result.get("description")
    sentiment = result.get("sentiment")
    if (
        _optional_str(name) is None
        or _optional_str(description) is None
        or not _is_number(sentiment)
    ):
        logger.error(
            "Update for %s %r has missing or invalid name, description or sentiment; skipped",
            payload.candidate_type.value,
            payload.item_name,
        )
        return

    category = payload.candidate_type
    existing = _existing_item(deps.knowledge, category, payload)
    is_new_item = existing is None
    common: dict[str, Any] = {
        "id": existing.id if existing is not None else str(uuid4()),
        "name": str(name).strip(),
        "description": str(description).strip(),
        "sentiment": float(sentiment),
        "last_updated": utc_now(),
        "learned_by": payload.context.subject_id if existing is None else existing.learned_by,
    }

    if category == Category.FACT:
        deps.knowledge.upsert_fact(Fact(**common, validated=ValidationLevel.NONE))
    elif category == Category.TRAIT:
        deps.knowledge.upsert_trait(
            Trait(**common, strength=_float_field(result, "strength", DEFAULT_STRENGTH)),
        )
    elif category == Category.TOPIC:
        previous_category = existing.category if isinstance(existing, Topic) else None
        deps.knowledge.upsert_topic(
            Topic(
                **common,
                category=(
                    _optional_str(result.get("category"))
                    or payload.item_category
                    or previous_category
                ),
                exposure_current=calculate_exposure(_exposure_impact(result)),
                exposure_desired=_exposure_desired(result),
            ),
        )
    else:
        deps.knowledge.upsert_person(
            Person(
                **common,
                relationship=_optional_str(result.get("relationship")) or DEFAULT_RELATIONSHIP,
                exposure_current=calculate_exposure(_exposure_impact(result)),
                exposure_desired=_exposure_desired(result),
            ),
        )

    logger.info("%s %s %r", "Created" if is_new_item else "Updated", category.value, name)


def _existing_item(
    knowledge: KnowledgeBase,
    category: Category,
    payload: UpdatePayload,
) -> KnowledgeItem | None:
    """The stored item to update, only if it lives in the target category."""

    if payload.is_new_item or not payload.existing_item_id:
        return None
    found = knowledge.find_by_id(payload.existing_item_id)
    if found is None:
        return None
    stored_category, item = found
    if stored_category != category:
        logger.warning(
            "Item %s is a %s, not a %s; creating a new item",
            item.id,
            stored_category.value,
            category.value,
        )
        return None
    return item


def _exposure_impact(result: dict[str, Any]) -> object:
    return result.get("exposureImpact", result.get("exposure_impact"))


def _exposure_desired(result: dict[str, Any]) -> float:
    if "exposureDesired" in result:
        return _float_field(result, "exposureDesired", DEFAULT_EXPOSURE)
    return _float_field(result, "exposure_desired", DEFAULT_EXPOSURE)


def _float_field(result: dict[str, Any], key: str, default: float) -> float:
    value = result.get(key)
    return float(value) if _is_number(value) else default


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _decode(response: JobResponse, expected: type) -> Any:
    payload = decode_payload(response.job.next_step, response.job.payload)
    if not isinstance(payload, expected):
        raise TypeError(
            f"Job {response.job.id} payload for {response.job.next_step} "
            f"is not a {expected.__name__}",
        )
    return payload
