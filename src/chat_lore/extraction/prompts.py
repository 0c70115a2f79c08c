"""Prompt templates for the scan, match and update stages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Protocol

from chat_lore.extraction.context import Message
from chat_lore.knowledge.models import Category, KnowledgeItem

DESCRIPTION_PREVIEW_CHARS = 255
NO_MATCH_NAME = "Not Found"


class PromptValidationError(ValueError):
    """Raised when prompt data lacks a required field."""


@dataclass(slots=True)
class Prompt:
    system: str
    user: str


@dataclass(slots=True)
class ScanPromptData:
    subject_display_name: str
    messages_context: list[Message]
    messages_analyze: list[Message]


@dataclass(slots=True)
class MatchableItem:
    data_type: Category
    data_id: str
    data_name: str
    data_description: str


@dataclass(slots=True)
class ItemMatchPromptData:
    candidate_type: Category
    candidate_name: str
    candidate_value: str
    all_items: list[MatchableItem] = field(default_factory=list)


@dataclass(slots=True)
class ItemUpdatePromptData:
    data_type: Category
    subject_display_name: str
    messages_context: list[Message]
    messages_analyze: list[Message]
    existing_item: KnowledgeItem | None = None
    new_item_name: str | None = None
    new_item_value: str | None = None


class PromptBuilder(Protocol):
    """Pure functions from stage data to `{system, user}` text."""

    def build_scan_prompt(self, category: Category, data: ScanPromptData) -> Prompt: ...

    def build_item_match_prompt(self, data: ItemMatchPromptData) -> Prompt: ...

    def build_item_update_prompt(self, data: ItemUpdatePromptData) -> Prompt: ...


_SCAN_FOCUS = {
    Category.FACT: (
        "FACTS: stable, verifiable details about the human such as name, birthday, "
        "location, job, or family structure"
    ),
    Category.TRAIT: (
        "TRAITS: enduring personality characteristics, habits, or ways the human "
        "communicates and behaves"
    ),
    Category.TOPIC: (
        "TOPICS: subjects, interests, hobbies, or ongoing concerns the human engages with"
    ),
    Category.PERSON: (
        "PEOPLE: specific individuals in the human's life, with their relationship "
        "to the human"
    ),
}

_SCAN_SYSTEM = """\
You analyze a conversation between a human and {subject} to detect {focus}.

Only report items supported by the MESSAGES TO ANALYZE. Earlier messages are
background and must not be mined on their own.

Respond with JSON only:
{{"{plural}": [{{"typeHint": "...", "valueHint": "...", "reason": "...", "confidence": 0.0}}]}}

If nothing qualifies, respond with {{"{plural}": []}}.
"""

_MATCH_SYSTEM = """\
You decide whether a newly detected {candidate_type} already exists in the
knowledge base. Items of any category are listed; a match may be stored under
a different category than the one it was detected as.

Respond with JSON only. If an existing item describes the same thing, respond
{{"name": "<existing item name>", "description": "<existing description>", "confidence": 0.0}}.
Otherwise respond {{"name": "{no_match}"}}.
"""

_UPDATE_SYSTEM = """\
You maintain one {data_type} in a knowledge base about the human talking to {subject}.

Using only the MESSAGES TO ANALYZE, decide whether the item should be created or
changed. If nothing warrants a change, respond with {{}}.

Otherwise respond with JSON containing at least "name", "description" and
"sentiment" (-1.0 to 1.0).{extra_fields}
"""

_UPDATE_EXTRA_FIELDS = {
    Category.FACT: "",
    Category.TRAIT: ' Include "strength" (0.0 to 1.0).',
    Category.TOPIC: (
        ' Include "category", "exposureImpact" (high, medium, low, none) and '
        '"exposureDesired" (0.0 to 1.0).'
    ),
    Category.PERSON: (
        ' Include "relationship", "exposureImpact" (high, medium, low, none) and '
        '"exposureDesired" (0.0 to 1.0).'
    ),
}


class DefaultPromptBuilder:
    """Builds the stage prompts used by the extraction orchestrator."""

    def build_scan_prompt(self, category: Category, data: ScanPromptData) -> Prompt:
        if not data.subject_display_name.strip():
            raise PromptValidationError("subject_display_name is required")
        if not data.messages_analyze:
            raise PromptValidationError("messages_analyze must not be empty")
        system = _SCAN_SYSTEM.format(
            subject=data.subject_display_name,
            focus=_SCAN_FOCUS[category],
            plural=category.plural,
        )
        user = "\n\n".join(
            [
                _render_messages("EARLIER MESSAGES (background)", data.messages_context),
                _render_messages("MESSAGES TO ANALYZE", data.messages_analyze),
            ],
        )
        return Prompt(system=system, user=user)

    def build_item_match_prompt(self, data: ItemMatchPromptData) -> Prompt:
        if not data.candidate_name.strip():
            raise PromptValidationError("candidate_name is required")
        system = _MATCH_SYSTEM.format(
            candidate_type=data.candidate_type.value,
            no_match=NO_MATCH_NAME,
        )
        existing = [
            {
                "type": item.data_type.value,
                "name": item.data_name,
                "description": item.data_description,
            }
            for item in data.all_items
        ]
        user = (
            f"CANDIDATE ({data.candidate_type.value}): {data.candidate_name}"
            f"\nVALUE: {data.candidate_value}"
            f"\n\nEXISTING ITEMS:\n{json.dumps(existing, ensure_ascii=False, indent=2)}"
        )
        return Prompt(system=system, user=user)

    def build_item_update_prompt(self, data: ItemUpdatePromptData) -> Prompt:
        if data.existing_item is None and not (data.new_item_name or "").strip():
            raise PromptValidationError("existing_item or new_item_name is required")
        system = _UPDATE_SYSTEM.format(
            data_type=data.data_type.value,
            subject=data.subject_display_name,
            extra_fields=_UPDATE_EXTRA_FIELDS[data.data_type],
        )
        if data.existing_item is not None:
            item_block = "CURRENT ITEM:\n" + json.dumps(
                data.existing_item.to_dict(),
                ensure_ascii=False,
                indent=2,
            )
        else:
            item_block = (
                f"NEW ITEM: {data.new_item_name}\nDETECTED VALUE: {data.new_item_value or ''}"
            )
        user = "\n\n".join(
            [
                item_block,
                _render_messages("EARLIER MESSAGES (background)", data.messages_context),
                _render_messages("MESSAGES TO ANALYZE", data.messages_analyze),
            ],
        )
        return Prompt(system=system, user=user)


def truncate_description(description: str, max_length: int = DESCRIPTION_PREVIEW_CHARS) -> str:
    if len(description) <= max_length:
        return description
    return description[:max_length] + "..."


def _render_messages(title: str, messages: list[Message]) -> str:
    if not messages:
        return f"{title}:\n(none)"
    lines = [
        f"[{message.timestamp.isoformat()}] {message.role}: {message.text}"
        for message in messages
    ]
    return f"{title}:\n" + "\n".join(lines)
