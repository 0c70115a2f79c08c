"""Knowledge base entities and storage."""

from chat_lore.knowledge.base import InMemoryKnowledgeBase, KnowledgeBase
from chat_lore.knowledge.models import (
    Category,
    Fact,
    ItemRef,
    KnowledgeItem,
    Person,
    Topic,
    Trait,
    ValidationLevel,
)

__all__ = [
    "Category",
    "Fact",
    "InMemoryKnowledgeBase",
    "ItemRef",
    "KnowledgeBase",
    "KnowledgeItem",
    "Person",
    "Topic",
    "Trait",
    "ValidationLevel",
]
