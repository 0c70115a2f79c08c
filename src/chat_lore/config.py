"""Runtime configuration for the extraction queue and LLM transport."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from chat_lore.extraction.context import DEFAULT_MAX_TOKENS, SYSTEM_PROMPT_BUFFER


@dataclass(slots=True)
class QueueSettings:
    """Retry, dead-letter and worker loop settings."""

    backoff_base_ms: int = 2_000
    backoff_max_ms: int = 30_000
    dlq_max_age_days: int = 14
    dlq_max_count: int = 50
    dlq_trim_interval_seconds: int = 86_400
    idle_poll_seconds: float = 1.0
    snapshot_debounce_seconds: float = 1.0


@dataclass(slots=True)
class LlmSettings:
    """OpenAI-compatible provider settings."""

    base_url: str = "http://127.0.0.1:1234/v1"
    api_key: str = "not-needed"
    default_model: str = ""
    openai_api_key: str = ""
    timeout_seconds: float = 120.0
    temperature: float = 0.7
    extraction_max_tokens: int = DEFAULT_MAX_TOKENS


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".chat_lore.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local model server."""

        return cls(
            db_path=db_path or Path(os.getenv("CHAT_LORE_DB_PATH", ".chat_lore.db")),
            queue=QueueSettings(
                backoff_base_ms=int(os.getenv("CHAT_LORE_BACKOFF_BASE_MS", "2000")),
                backoff_max_ms=int(os.getenv("CHAT_LORE_BACKOFF_MAX_MS", "30000")),
                dlq_max_age_days=int(os.getenv("CHAT_LORE_DLQ_MAX_AGE_DAYS", "14")),
                dlq_max_count=int(os.getenv("CHAT_LORE_DLQ_MAX_COUNT", "50")),
                dlq_trim_interval_seconds=int(
                    os.getenv("CHAT_LORE_DLQ_TRIM_INTERVAL_SECONDS", "86400"),
                ),
                idle_poll_seconds=float(os.getenv("CHAT_LORE_IDLE_POLL_SECONDS", "1.0")),
                snapshot_debounce_seconds=float(
                    os.getenv("CHAT_LORE_SNAPSHOT_DEBOUNCE_SECONDS", "1.0"),
                ),
            ),
            llm=LlmSettings(
                base_url=os.getenv("CHAT_LORE_LLM_BASE_URL", "http://127.0.0.1:1234/v1"),
                api_key=os.getenv("CHAT_LORE_LLM_API_KEY", "not-needed"),
                default_model=os.getenv("CHAT_LORE_LLM_MODEL", ""),
                openai_api_key=os.getenv("CHAT_LORE_OPENAI_API_KEY", ""),
                timeout_seconds=float(os.getenv("CHAT_LORE_LLM_TIMEOUT_SECONDS", "120")),
                temperature=float(os.getenv("CHAT_LORE_LLM_TEMPERATURE", "0.7")),
                extraction_max_tokens=int(
                    os.getenv("CHAT_LORE_EXTRACTION_MAX_TOKENS", str(DEFAULT_MAX_TOKENS)),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the queue cannot run with."""

        if self.queue.backoff_base_ms <= 0:
            raise ValueError("CHAT_LORE_BACKOFF_BASE_MS must be > 0.")
        if self.queue.backoff_max_ms < self.queue.backoff_base_ms:
            raise ValueError(
                "CHAT_LORE_BACKOFF_MAX_MS must be >= CHAT_LORE_BACKOFF_BASE_MS.",
            )
        if self.queue.dlq_max_age_days < 0:
            raise ValueError("CHAT_LORE_DLQ_MAX_AGE_DAYS must be >= 0.")
        if self.queue.dlq_max_count < 0:
            raise ValueError("CHAT_LORE_DLQ_MAX_COUNT must be >= 0.")
        if self.queue.idle_poll_seconds <= 0:
            raise ValueError("CHAT_LORE_IDLE_POLL_SECONDS must be > 0.")
        if self.llm.timeout_seconds <= 0:
            raise ValueError("CHAT_LORE_LLM_TIMEOUT_SECONDS must be > 0.")
        if self.llm.extraction_max_tokens <= SYSTEM_PROMPT_BUFFER:
            raise ValueError(
                f"CHAT_LORE_EXTRACTION_MAX_TOKENS must be > {SYSTEM_PROMPT_BUFFER}.",
            )
        _validate_base_url(self.llm.base_url)


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid CHAT_LORE_LLM_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
