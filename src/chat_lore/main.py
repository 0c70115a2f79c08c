"""CLI entrypoint for chat-lore."""

import logging
from pathlib import Path

import rich_click as click

from chat_lore import __version__
from chat_lore.controllers import (
    ChatLoreCliController,
    DbCommand,
    ExtractCommand,
    KnowledgeListCommand,
    QueueJobCommand,
    QueueListCommand,
    QueueTrimCommand,
    WorkerCommand,
    parse_timestamp,
)
from chat_lore.knowledge.models import Category
from chat_lore.queue.models import JobState

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ChatLoreCliController()


@click.group()
@click.version_option(version=__version__, prog_name="chat-lore")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def chat_lore(verbose: bool) -> None:
    """Background knowledge extraction over conversation history."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@chat_lore.command("extract")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--messages",
    "messages_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file with messages: `[{id, role, text, timestamp}]`.",
)
@click.option("--subject-id", required=True, help="Id of the conversation partner.")
@click.option("--subject-name", default=None, help="Display name used in prompts.")
@click.option(
    "--analyze-from",
    default=None,
    help="ISO timestamp; earlier messages are background only.",
)
def extract(
    db_path: Path | None,
    messages_path: Path,
    subject_id: str,
    subject_name: str | None,
    analyze_from: str | None,
) -> None:
    """Queue fact, trait, topic and person scans for a message file."""

    _emit_lines(
        CONTROLLER.extract(
            ExtractCommand(
                db_path=db_path,
                messages_path=messages_path,
                subject_id=subject_id,
                subject_name=subject_name,
                analyze_from=parse_timestamp(analyze_from) if analyze_from else None,
            ),
        ),
    )


@chat_lore.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until the queue drains.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
def worker(db_path: Path | None, once: bool, max_jobs: int | None) -> None:
    """Run the extraction queue worker."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(db_path=db_path, once=once, max_jobs=max_jobs),
        ),
    )


@chat_lore.group()
def queue() -> None:
    """Job queue inspection and dead-letter commands."""


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--state",
    type=click.Choice([state.value for state in JobState], case_sensitive=False),
    default=None,
    help="Optional state filter.",
)
def queue_list(db_path: Path | None, state: str | None) -> None:
    """List queued jobs."""

    _emit_lines(CONTROLLER.list_jobs(QueueListCommand(db_path=db_path, state=state)))


@queue.command("dlq")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_dlq(db_path: Path | None) -> None:
    """List dead-lettered jobs with their last error."""

    _emit_lines(CONTROLLER.list_dead_letters(DbCommand(db_path=db_path)))


@queue.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def queue_recover(db_path: Path | None, job_id: str) -> None:
    """Move a dead-lettered job back to pending."""

    _emit_lines(CONTROLLER.recover(QueueJobCommand(db_path=db_path, job_id=job_id)))


@queue.command("trim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=0),
    default=None,
    help="Drop dead-lettered jobs older than this. Defaults to CHAT_LORE_DLQ_MAX_AGE_DAYS.",
)
@click.option(
    "--max-count",
    type=click.IntRange(min=0),
    default=None,
    help="Keep at most this many dead-lettered jobs. Defaults to CHAT_LORE_DLQ_MAX_COUNT.",
)
def queue_trim(db_path: Path | None, max_age_days: int | None, max_count: int | None) -> None:
    """Trim the dead-letter queue by age, then by count."""

    _emit_lines(
        CONTROLLER.trim(
            QueueTrimCommand(db_path=db_path, max_age_days=max_age_days, max_count=max_count),
        ),
    )


@queue.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_clear(db_path: Path | None) -> None:
    """Drop every pending and processing job."""

    _emit_lines(CONTROLLER.clear(DbCommand(db_path=db_path)))


@chat_lore.group()
def knowledge() -> None:
    """Knowledge base commands."""


@knowledge.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--category",
    type=click.Choice([category.value for category in Category], case_sensitive=False),
    default=None,
    help="Optional category filter.",
)
def knowledge_list(db_path: Path | None, category: str | None) -> None:
    """List learned facts, traits, topics and people."""

    _emit_lines(
        CONTROLLER.list_knowledge(KnowledgeListCommand(db_path=db_path, category=category)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    chat_lore()
