"""Knowledge base interface used by extraction handlers, plus an in-memory store."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from chat_lore.knowledge.models import (
    ITEM_TYPES,
    Category,
    Fact,
    ItemRef,
    KnowledgeItem,
    Person,
    Topic,
    Trait,
    item_from_dict,
)


class KnowledgeBase(Protocol):
    """Mutation and lookup surface the extraction pipeline depends on."""

    def upsert_fact(self, item: Fact) -> None: ...

    def upsert_trait(self, item: Trait) -> None: ...

    def upsert_topic(self, item: Topic) -> None: ...

    def upsert_person(self, item: Person) -> None: ...

    def get_facts_by_ids(self, ids: Iterable[str]) -> list[Fact]: ...

    def get_traits_by_ids(self, ids: Iterable[str]) -> list[Trait]: ...

    def get_topics_by_ids(self, ids: Iterable[str]) -> list[Topic]: ...

    def get_people_by_ids(self, ids: Iterable[str]) -> list[Person]: ...

    def find_by_name_across_categories(self, name: str) -> ItemRef | None: ...

    def find_by_id(self, item_id: str) -> tuple[Category, KnowledgeItem] | None: ...

    def list_items(self, category: Category) -> list[KnowledgeItem]: ...


class InMemoryKnowledgeBase:
    """Four id-keyed collections held in process memory."""

    def __init__(self) -> None:
        self._items: dict[Category, dict[str, KnowledgeItem]] = {
            category: {} for category in Category
        }

    def upsert(self, category: Category, item: KnowledgeItem) -> None:
        expected = ITEM_TYPES[category]
        if not isinstance(item, expected):
            raise TypeError(f"Expected {expected.__name__} for {category.value}")
        self._items[category][item.id] = item

    def upsert_fact(self, item: Fact) -> None:
        self.upsert(Category.FACT, item)

    def upsert_trait(self, item: Trait) -> None:
        self.upsert(Category.TRAIT, item)

    def upsert_topic(self, item: Topic) -> None:
        self.upsert(Category.TOPIC, item)

    def upsert_person(self, item: Person) -> None:
        self.upsert(Category.PERSON, item)

    def get_facts_by_ids(self, ids: Iterable[str]) -> list[Fact]:
        return self._by_ids(Category.FACT, ids)  # type: ignore[return-value]

    def get_traits_by_ids(self, ids: Iterable[str]) -> list[Trait]:
        return self._by_ids(Category.TRAIT, ids)  # type: ignore[return-value]

    def get_topics_by_ids(self, ids: Iterable[str]) -> list[Topic]:
        return self._by_ids(Category.TOPIC, ids)  # type: ignore[return-value]

    def get_people_by_ids(self, ids: Iterable[str]) -> list[Person]:
        return self._by_ids(Category.PERSON, ids)  # type: ignore[return-value]

    def get(self, category: Category, item_id: str) -> KnowledgeItem | None:
        return self._items[category].get(item_id)

    def find_by_name_across_categories(self, name: str) -> ItemRef | None:
        """Case-insensitive name lookup over facts, traits, topics, then people."""

        needle = name.strip().casefold()
        if not needle:
            return None
        for category in Category:
            for item in self._items[category].values():
                if item.name.strip().casefold() == needle:
                    return ItemRef(category=category, id=item.id)
        return None

    def find_by_id(self, item_id: str) -> tuple[Category, KnowledgeItem] | None:
        for category in Category:
            item = self._items[category].get(item_id)
            if item is not None:
                return category, item
        return None

    def list_items(self, category: Category) -> list[KnowledgeItem]:
        return list(self._items[category].values())

    def count(self) -> int:
        return sum(len(items) for items in self._items.values())

    def copy(self) -> InMemoryKnowledgeBase:
        """Shallow copy whose collections are detached from later upserts."""

        clone = InMemoryKnowledgeBase()
        for category in Category:
            clone._items[category] = dict(self._items[category])
        return clone

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            category.plural: [item.to_dict() for item in self._items[category].values()]
            for category in Category
        }

    @classmethod
    def from_dict(cls, raw: dict[str, list[dict[str, Any]]]) -> InMemoryKnowledgeBase:
        knowledge = cls()
        for category in Category:
            for item_raw in raw.get(category.plural, []):
                knowledge.upsert(category, item_from_dict(category, item_raw))
        return knowledge

    def _by_ids(self, category: Category, ids: Iterable[str]) -> list[KnowledgeItem]:
        items = self._items[category]
        return [items[item_id] for item_id in ids if item_id in items]
