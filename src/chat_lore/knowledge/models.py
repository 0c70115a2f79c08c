"""Knowledge base entities learned about the human subject."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from chat_lore.timeutil import from_iso, utc_now


class Category(str, Enum):
    """The four fixed extraction categories."""

    FACT = "fact"
    TRAIT = "trait"
    TOPIC = "topic"
    PERSON = "person"

    @property
    def plural(self) -> str:
        return "people" if self is Category.PERSON else f"{self.value}s"


class ValidationLevel(str, Enum):
    NONE = "none"
    HUMAN = "human"


@dataclass(slots=True)
class KnowledgeItem:
    """Fields shared by every category."""

    id: str
    name: str
    description: str
    sentiment: float
    last_updated: datetime = field(default_factory=utc_now)
    learned_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        return data


@dataclass(slots=True)
class Fact(KnowledgeItem):
    validated: ValidationLevel = ValidationLevel.NONE

    def to_dict(self) -> dict[str, Any]:
        data = KnowledgeItem.to_dict(self)
        data["validated"] = self.validated.value
        return data


@dataclass(slots=True)
class Trait(KnowledgeItem):
    strength: float = 0.5


@dataclass(slots=True)
class Topic(KnowledgeItem):
    category: str | None = None
    exposure_current: float = 0.5
    exposure_desired: float = 0.5


@dataclass(slots=True)
class Person(KnowledgeItem):
    relationship: str = "Unknown"
    exposure_current: float = 0.5
    exposure_desired: float = 0.5


ITEM_TYPES: dict[Category, type[KnowledgeItem]] = {
    Category.FACT: Fact,
    Category.TRAIT: Trait,
    Category.TOPIC: Topic,
    Category.PERSON: Person,
}


@dataclass(slots=True)
class ItemRef:
    """Location of a stored item."""

    category: Category
    id: str


def item_from_dict(category: Category, raw: dict[str, Any]) -> KnowledgeItem:
    """Rebuild an item of `category` from its `to_dict` form."""

    values = dict(raw)
    values["last_updated"] = from_iso(str(values["last_updated"]))
    if category == Category.FACT and "validated" in values:
        values["validated"] = ValidationLevel(values["validated"])
    return ITEM_TYPES[category](**values)
