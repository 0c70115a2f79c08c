"""Best-effort cleanup of raw LLM completions."""

from __future__ import annotations

import json
import re
from typing import Any

SILENCE_SENTINELS = frozenset({"no message", "[no message]"})

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_THINK_BLOCKS = (
    re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<thinking>.*?</thinking>", re.DOTALL | re.IGNORECASE),
)
_REPAIRS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?<![:\"\\])//[^\n]*"), ""),
    (re.compile(r"\\'"), "'"),
    (re.compile(r":\s*0([1-9][0-9]*)([,\s\]}])"), r": 0.\1\2"),
    (re.compile(r",(\s*[\]}])"), r"\1"),
)
_UNESCAPED_QUOTE = re.compile(r'(?<!\\)"')


class JsonParseError(ValueError):
    """Raised when a completion cannot be turned into JSON."""


def parse_json_response(content: str) -> Any:
    """Parse JSON from a completion, tolerating code fences and small defects."""

    fenced = _FENCED_JSON.search(content)
    candidate = fenced.group(1).strip() if fenced is not None else content.strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(repair_json(candidate))
    except json.JSONDecodeError as error:
        raise JsonParseError(str(error)) from error


def repair_json(text: str) -> str:
    """Apply conservative textual fixes seen in local-model output."""

    repaired = text
    for pattern, replacement in _REPAIRS:
        repaired = pattern.sub(replacement, repaired)

    if len(_UNESCAPED_QUOTE.findall(repaired)) % 2 != 0:
        repaired += '"'
    repaired += "]" * max(0, repaired.count("[") - repaired.count("]"))
    repaired += "}" * max(0, repaired.count("{") - repaired.count("}"))
    return repaired


def clean_response_content(content: str) -> str:
    """Strip reasoning blocks and surrounding whitespace."""

    cleaned = content
    for pattern in _THINK_BLOCKS:
        cleaned = pattern.sub("", cleaned)
    return cleaned.strip()


def is_silence(cleaned: str) -> bool:
    """True when the model chose to say nothing."""

    return cleaned.strip().lower() in SILENCE_SENTINELS
