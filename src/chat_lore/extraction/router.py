"""Maps a job's `next_step` tag to the handler for its response."""

from __future__ import annotations

from collections.abc import Callable, Mapping

from chat_lore.extraction.handlers import (
    HandlerDeps,
    handle_fact_scan,
    handle_item_match,
    handle_item_update,
    handle_person_scan,
    handle_topic_scan,
    handle_trait_scan,
)
from chat_lore.queue.models import JobResponse, NextStep

Handler = Callable[[JobResponse, HandlerDeps], None]

DEFAULT_HANDLERS: Mapping[NextStep, Handler] = {
    NextStep.FACT_SCAN: handle_fact_scan,
    NextStep.TRAIT_SCAN: handle_trait_scan,
    NextStep.TOPIC_SCAN: handle_topic_scan,
    NextStep.PERSON_SCAN: handle_person_scan,
    NextStep.ITEM_MATCH: handle_item_match,
    NextStep.ITEM_UPDATE: handle_item_update,
}


class UnknownStepError(LookupError):
    """Raised for a `next_step` tag with no registered handler."""


class ResponseRouter:
    def __init__(
        self,
        deps: HandlerDeps,
        handlers: Mapping[NextStep, Handler] | None = None,
    ) -> None:
        self.deps = deps
        self._handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    def resolve(self, tag: str) -> Handler:
        try:
            step = NextStep(tag)
        except ValueError as error:
            raise UnknownStepError(f"No handler for {tag}") from error
        handler = self._handlers.get(step)
        if handler is None:
            raise UnknownStepError(f"No handler for {tag}")
        return handler

    def dispatch(self, response: JobResponse) -> None:
        """Run the handler for a successful response; handler errors propagate."""

        handler = self.resolve(response.job.next_step)
        handler(response, self.deps)
