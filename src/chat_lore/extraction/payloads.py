"""Typed job payloads for each pipeline stage.

Jobs keep their payload as a plain dict so the queue can persist it without
knowing its shape; handlers decode it with `decode_payload`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from chat_lore.extraction.context import ExtractionContext
from chat_lore.knowledge.models import Category
from chat_lore.queue.models import NextStep

SCAN_STEPS: dict[Category, NextStep] = {
    Category.FACT: NextStep.FACT_SCAN,
    Category.TRAIT: NextStep.TRAIT_SCAN,
    Category.TOPIC: NextStep.TOPIC_SCAN,
    Category.PERSON: NextStep.PERSON_SCAN,
}


@dataclass(slots=True)
class ScanCandidate:
    """One item detected by a stage-1 scan."""

    type_hint: str
    value_hint: str
    reason: str = ""
    confidence: float | None = None

    @classmethod
    def from_raw(cls, raw: object) -> ScanCandidate | None:
        """Accept camelCase (as prompted) or snake_case keys; None if unusable."""

        if not isinstance(raw, dict):
            return None
        type_hint = raw.get("typeHint", raw.get("type_hint"))
        value_hint = raw.get("valueHint", raw.get("value_hint"))
        if not type_hint and not value_hint:
            return None
        confidence = raw.get("confidence")
        return cls(
            type_hint=str(type_hint or ""),
            value_hint=str(value_hint or ""),
            reason=str(raw.get("reason") or ""),
            confidence=float(confidence) if isinstance(confidence, int | float) else None,
        )

    def item_name_and_value(self, category: Category) -> tuple[str, str]:
        """Facts and traits are named by their type; topics and people by their value."""

        if category in {Category.TOPIC, Category.PERSON}:
            return self.value_hint or self.type_hint, self.type_hint
        return self.type_hint or self.value_hint, self.value_hint

    def to_dict(self) -> dict[str, Any]:
        return {
            "type_hint": self.type_hint,
            "value_hint": self.value_hint,
            "reason": self.reason,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class ScanPayload:
    category: Category
    context: ExtractionContext

    def to_dict(self) -> dict[str, Any]:
        return {**self.context.to_payload(), "category": self.category.value}


@dataclass(slots=True)
class MatchPayload:
    candidate_type: Category
    item_name: str
    item_value: str
    candidate: ScanCandidate
    context: ExtractionContext

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.context.to_payload(),
            "candidate_type": self.candidate_type.value,
            "item_name": self.item_name,
            "item_value": self.item_value,
            **self.candidate.to_dict(),
        }


@dataclass(slots=True)
class UpdatePayload:
    candidate_type: Category
    is_new_item: bool
    existing_item_id: str | None
    item_name: str
    item_value: str
    item_category: str | None
    context: ExtractionContext

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.context.to_payload(),
            "candidate_type": self.candidate_type.value,
            "is_new_item": self.is_new_item,
            "existing_item_id": self.existing_item_id,
            "item_name": self.item_name,
            "item_value": self.item_value,
            "item_category": self.item_category,
        }


StagePayload = ScanPayload | MatchPayload | UpdatePayload


def decode_payload(next_step: str, payload: dict[str, Any]) -> StagePayload:
    """Decode a job payload according to its `next_step` tag."""

    step = NextStep(next_step)
    context = ExtractionContext.from_payload(payload)
    if step == NextStep.ITEM_MATCH:
        candidate = ScanCandidate.from_raw(payload) or ScanCandidate(type_hint="", value_hint="")
        return MatchPayload(
            candidate_type=Category(payload["candidate_type"]),
            item_name=str(payload.get("item_name") or ""),
            item_value=str(payload.get("item_value") or ""),
            candidate=candidate,
            context=context,
        )
    if step == NextStep.ITEM_UPDATE:
        existing_item_id = payload.get("existing_item_id")
        item_category = payload.get("item_category")
        return UpdatePayload(
            candidate_type=Category(payload["candidate_type"]),
            is_new_item=bool(payload.get("is_new_item", existing_item_id is None)),
            existing_item_id=str(existing_item_id) if existing_item_id else None,
            item_name=str(payload.get("item_name") or ""),
            item_value=str(payload.get("item_value") or ""),
            item_category=str(item_category) if item_category else None,
            context=context,
        )
    category = next(cat for cat, scan_step in SCAN_STEPS.items() if scan_step == step)
    return ScanPayload(category=category, context=context)
