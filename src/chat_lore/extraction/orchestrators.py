"""Enqueue builders for each extraction stage."""

from __future__ import annotations

import logging

from chat_lore.extraction.context import (
    DEFAULT_MAX_TOKENS,
    ExtractionContext,
    chunk_extraction_context,
)
from chat_lore.extraction.payloads import (
    SCAN_STEPS,
    MatchPayload,
    ScanCandidate,
    ScanPayload,
    UpdatePayload,
)
from chat_lore.extraction.prompts import (
    ItemMatchPromptData,
    ItemUpdatePromptData,
    MatchableItem,
    Prompt,
    PromptBuilder,
    ScanPromptData,
    truncate_description,
)
from chat_lore.knowledge.base import KnowledgeBase
from chat_lore.knowledge.models import Category, KnowledgeItem
from chat_lore.queue.models import JobKind, JobPriority, JobSpec, NextStep
from chat_lore.queue.store import JobStore

logger = logging.getLogger(__name__)

EXTRACTION_PRIORITY = JobPriority.LOW


class ExtractionOrchestrator:
    """Builds stage prompts and payloads and enqueues them on the job store."""

    def __init__(
        self,
        *,
        store: JobStore,
        knowledge: KnowledgeBase,
        prompts: PromptBuilder,
        model: str | None = None,
    ) -> None:
        self.store = store
        self.knowledge = knowledge
        self.prompts = prompts
        self.model = model

    # -- stage 1 ------------------------------------------------------------

    def queue_scan(self, category: Category, context: ExtractionContext) -> str:
        return self.store.enqueue(self._scan_spec(category, context))

    def queue_fact_scan(self, context: ExtractionContext) -> str:
        return self.queue_scan(Category.FACT, context)

    def queue_trait_scan(self, context: ExtractionContext) -> str:
        return self.queue_scan(Category.TRAIT, context)

    def queue_topic_scan(self, context: ExtractionContext) -> str:
        return self.queue_scan(Category.TOPIC, context)

    def queue_person_scan(self, context: ExtractionContext) -> str:
        return self.queue_scan(Category.PERSON, context)

    def queue_all_scans(self, context: ExtractionContext) -> list[str]:
        """Enqueue all four scans; nothing is enqueued if any prompt is invalid."""

        specs = [self._scan_spec(category, context) for category in Category]
        job_ids = [self.store.enqueue(spec) for spec in specs]
        logger.info(
            "Queued %d scans for %s (%d message(s) to analyze)",
            len(job_ids),
            context.subject_id,
            len(context.messages_analyze),
        )
        return job_ids

    def queue_chunked_scans(
        self,
        context: ExtractionContext,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> list[str]:
        """Enqueue all four scans for every batch of an oversized analyze slice.

        Nothing is enqueued if any prompt is invalid.
        """

        chunks = chunk_extraction_context(context, max_tokens)
        specs = [
            self._scan_spec(category, chunk) for chunk in chunks for category in Category
        ]
        job_ids = [self.store.enqueue(spec) for spec in specs]
        logger.info(
            "Queued %d scans in %d batch(es) for %s (%d message(s) to analyze)",
            len(job_ids),
            len(chunks),
            context.subject_id,
            len(context.messages_analyze),
        )
        return job_ids

    # -- stage 2 ------------------------------------------------------------

    def queue_item_match(
        self,
        category: Category,
        candidate: ScanCandidate,
        context: ExtractionContext,
    ) -> str:
        return self.store.enqueue(self._match_spec(category, candidate, context))

    def queue_item_matches(
        self,
        category: Category,
        candidates: list[ScanCandidate],
        context: ExtractionContext,
    ) -> list[str]:
        """Enqueue one match per candidate; nothing is enqueued if any prompt is invalid."""

        specs = [self._match_spec(category, candidate, context) for candidate in candidates]
        return [self.store.enqueue(spec) for spec in specs]

    # -- stage 3 ------------------------------------------------------------

    def queue_item_update(
        self,
        category: Category,
        matched_name: str | None,
        *,
        item_name: str,
        item_value: str,
        context: ExtractionContext,
        item_category: str | None = None,
        matched_id: str | None = None,
    ) -> str:
        """Enqueue the update stage for a new item or a resolved existing one.

        `matched_name` is resolved to an id across all categories; a hit stored
        under another category retargets the update to that category.
        """

        existing = self._resolve_existing(matched_name, matched_id)
        target_category = category
        existing_item: KnowledgeItem | None = None
        if existing is not None:
            target_category, existing_item = existing
            if target_category != category:
                logger.info(
                    "Candidate %r detected as %s is stored as %s",
                    item_name,
                    category.value,
                    target_category.value,
                )

        is_new_item = existing_item is None
        prompt = self.prompts.build_item_update_prompt(
            ItemUpdatePromptData(
                data_type=target_category,
                subject_display_name=context.subject_display_name,
                messages_context=context.messages_context,
                messages_analyze=context.messages_analyze,
                existing_item=existing_item,
                new_item_name=item_name if is_new_item else None,
                new_item_value=item_value if is_new_item else None,
            ),
        )
        payload = UpdatePayload(
            candidate_type=target_category,
            is_new_item=is_new_item,
            existing_item_id=existing_item.id if existing_item is not None else None,
            item_name=existing_item.name if existing_item is not None else item_name,
            item_value=item_value,
            item_category=item_category,
            context=context,
        )
        return self._enqueue(prompt, NextStep.ITEM_UPDATE, payload.to_dict())

    # -- internals ----------------------------------------------------------

    def _scan_spec(self, category: Category, context: ExtractionContext) -> JobSpec:
        prompt = self.prompts.build_scan_prompt(
            category,
            ScanPromptData(
                subject_display_name=context.subject_display_name,
                messages_context=context.messages_context,
                messages_analyze=context.messages_analyze,
            ),
        )
        return self._spec(
            prompt,
            SCAN_STEPS[category],
            ScanPayload(category=category, context=context).to_dict(),
        )

    def _match_spec(
        self,
        category: Category,
        candidate: ScanCandidate,
        context: ExtractionContext,
    ) -> JobSpec:
        item_name, item_value = candidate.item_name_and_value(category)
        prompt = self.prompts.build_item_match_prompt(
            ItemMatchPromptData(
                candidate_type=category,
                candidate_name=item_name,
                candidate_value=item_value,
                all_items=self._matchable_items(category),
            ),
        )
        payload = MatchPayload(
            candidate_type=category,
            item_name=item_name,
            item_value=item_value,
            candidate=candidate,
            context=context,
        )
        return self._spec(prompt, NextStep.ITEM_MATCH, payload.to_dict())

    def _enqueue(self, prompt: Prompt, next_step: NextStep, payload: dict[str, object]) -> str:
        return self.store.enqueue(self._spec(prompt, next_step, payload))

    def _spec(self, prompt: Prompt, next_step: NextStep, payload: dict[str, object]) -> JobSpec:
        return JobSpec(
            kind=JobKind.JSON,
            priority=EXTRACTION_PRIORITY,
            system=prompt.system,
            user=prompt.user,
            next_step=next_step.value,
            payload=payload,
            model=self.model,
        )

    def _matchable_items(self, category: Category) -> list[MatchableItem]:
        items: list[MatchableItem] = []
        for stored_category in Category:
            for item in self.knowledge.list_items(stored_category):
                description = (
                    item.description
                    if stored_category == category
                    else truncate_description(item.description)
                )
                items.append(
                    MatchableItem(
                        data_type=stored_category,
                        data_id=item.id,
                        data_name=item.name,
                        data_description=description,
                    ),
                )
        return items

    def _resolve_existing(
        self,
        matched_name: str | None,
        matched_id: str | None,
    ) -> tuple[Category, KnowledgeItem] | None:
        if matched_id:
            found = self.knowledge.find_by_id(matched_id)
            if found is not None:
                return found
        if not matched_name:
            return None
        ref = self.knowledge.find_by_name_across_categories(matched_name)
        if ref is None:
            logger.warning(
                "Matched name %r not found in knowledge base; treating as new",
                matched_name,
            )
            return None
        return self.knowledge.find_by_id(ref.id)
