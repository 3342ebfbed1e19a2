"""CLI entrypoint for lease-queue."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from lease_queue import __version__
from lease_queue.errors import QueueError
from lease_queue.queue.controllers import (
    CreateQueueCommand,
    InitCommand,
    PruneCommand,
    QueueCliController,
    QueueCommand,
    TasksCommand,
)

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

STATUS_NAMES = ("SUCCESS", "PENDING", "FAILURE")


@click.group()
@click.version_option(version=__version__, prog_name="lease-queue")
def lease_queue() -> None:
    """Durable task queue with session-owned leases."""


@lease_queue.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_init(db_path: Path | None) -> None:
    """Create or upgrade the shared schema."""

    _emit_lines(_run(QUEUE_CONTROLLER.init, InitCommand(db_path=db_path)))


@lease_queue.command("create-queue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("name")
def queue_create(db_path: Path | None, name: str) -> None:
    """Create the table backing queue NAME."""

    _emit_lines(
        _run(QUEUE_CONTROLLER.create_queue, CreateQueueCommand(db_path=db_path, name=name)),
    )


@lease_queue.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("queue")
def queue_reclaim(db_path: Path | None, queue: str) -> None:
    """Release or fail tasks held by expired sessions."""

    _emit_lines(_run(QUEUE_CONTROLLER.reclaim, QueueCommand(db_path=db_path, queue=queue)))


@lease_queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--parameters",
    default=None,
    help="Only count tasks with this JSON parameters blob (or without parameters).",
)
@click.argument("queue")
def queue_status(db_path: Path | None, parameters: str | None, queue: str) -> None:
    """Show task counts per status."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.status,
            QueueCommand(db_path=db_path, queue=queue, parameters=parameters),
        ),
    )


@lease_queue.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--parameters",
    default=None,
    help="Only release tasks with this JSON parameters blob (or without parameters).",
)
@click.argument("queue")
def queue_clear(db_path: Path | None, parameters: str | None, queue: str) -> None:
    """Revoke ownership of every pending task, counting one attempt each."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.clear,
            QueueCommand(db_path=db_path, queue=queue, parameters=parameters),
        ),
    )


@lease_queue.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    "status",
    multiple=True,
    type=click.Choice(STATUS_NAMES),
    help="Status filter. Can be repeated.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of tasks to show.",
)
@click.argument("queue")
def queue_tasks(
    db_path: Path | None,
    status: tuple[str, ...],
    limit: int | None,
    queue: str,
) -> None:
    """List tasks in id order."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.tasks,
            TasksCommand(db_path=db_path, queue=queue, status=status, limit=limit),
        ),
    )


@lease_queue.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queues",
    default=None,
    help="Comma-separated `pattern:age` rules, age in days; `*` and `?` are wildcards.",
)
@click.option(
    "--mode",
    type=click.Choice(("list", "execute")),
    default="execute",
    show_default=True,
    help="`list` shows matched queues without deleting.",
)
@click.option(
    "--status",
    default=None,
    help="Comma-separated statuses to delete, for example `SUCCESS,FAILURE`.",
)
def queue_prune(
    db_path: Path | None,
    queues: str | None,
    mode: str,
    status: str | None,
) -> None:
    """Delete old tasks from queues matching retention rules."""

    _emit_lines(
        _run(
            QUEUE_CONTROLLER.prune,
            PruneCommand(db_path=db_path, queues=queues, mode=mode, status=status),
        ),
    )


def _run(handler: Callable[[Any], list[str]], command: Any) -> list[str]:
    try:
        return handler(command)
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    lease_queue()
