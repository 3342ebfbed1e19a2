"""Controllers for queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from lease_queue.config import Settings
from lease_queue.queue.manager import Manager
from lease_queue.queue.models import (
    NO_PARAMS,
    ManagerConfig,
    ParametersValue,
    PruneOptions,
    TaskFilter,
    TaskStatus,
)
from lease_queue.queue.pruner import Pruner
from lease_queue.storage.common import build_sqlite_engine, format_timestamp
from lease_queue.storage.database import create_queue, init_schema, list_queue_tables

CLI_TOOL = "lease-queue"


@dataclass(slots=True)
class InitCommand:
    """CLI inputs for schema initialization."""

    db_path: Path | None


@dataclass(slots=True)
class CreateQueueCommand:
    """CLI inputs for queue table creation."""

    db_path: Path | None
    name: str


@dataclass(slots=True)
class QueueCommand:
    """CLI inputs for commands operating on one queue."""

    db_path: Path | None
    queue: str
    parameters: str | None = None


@dataclass(slots=True)
class TasksCommand:
    """CLI inputs for task listing."""

    db_path: Path | None
    queue: str
    status: tuple[str, ...]
    limit: int | None


@dataclass(slots=True)
class PruneCommand:
    """CLI inputs for retention prune command."""

    db_path: Path | None
    queues: str | None
    mode: str
    status: str | None


class QueueCliController:
    """Coordinates queue command execution."""

    def init(self, command: InitCommand) -> list[str]:
        settings = _settings(command.db_path)
        init_schema(settings.db_path)
        return [f"Schema initialized: db={settings.db_path}"]

    def create_queue(self, command: CreateQueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        # Validates the name the same way a manager would.
        ManagerConfig(queue=command.name, tool=CLI_TOOL)
        engine = build_sqlite_engine(
            db_path=settings.db_path,
            busy_timeout_ms=settings.busy_timeout_ms,
        )
        try:
            created = create_queue(engine, command.name)
            queues = list_queue_tables(engine)
        finally:
            engine.dispose()
        state = "created" if created else "already exists"
        return [f"Queue {command.name} {state}", f"Queues: {', '.join(queues)}"]

    def reclaim(self, command: QueueCommand) -> list[str]:
        with _manager(command.db_path, command.queue, NO_PARAMS) as manager:
            result = manager.reclaimed
        return [
            f"Reclaimed queue {command.queue}: "
            f"released={result.released} failed={result.failed} "
            f"sessions_purged={result.sessions_purged}",
        ]

    def status(self, command: QueueCommand) -> list[str]:
        with _manager(command.db_path, command.queue, _parameters(command.parameters)) as manager:
            counts = manager.status_counts()
        lines = [f"Queue {command.queue}: total={sum(counts.values())}"]
        lines.extend(f"  {status.name}: {count}" for status, count in counts.items())
        return lines

    def clear(self, command: QueueCommand) -> list[str]:
        with _manager(command.db_path, command.queue, _parameters(command.parameters)) as manager:
            released = manager.clear_sessions()
        return [f"Queue {command.queue}: released ownership of {released} tasks"]

    def tasks(self, command: TasksCommand) -> list[str]:
        filters = TaskFilter(
            status=[TaskStatus[name].value for name in command.status] or None,
            max_tasks=command.limit,
        )
        with _manager(command.db_path, command.queue, NO_PARAMS) as manager:
            tasks = manager.load_tasks(filters)
        if not tasks:
            return [f"Queue {command.queue}: no tasks"]
        lines = [f"Queue {command.queue}: {len(tasks)} tasks"]
        for task in tasks:
            lines.append(
                f"  id={task.id} taskid={task.taskid} status={task.status.name} "
                f"attempts={task.attempts}/{task.max_attempts or '-'} "
                f"owner={task.sessionid or '-'} "
                f"created={format_timestamp(task.created)} "
                f"expires={format_timestamp(task.expires)}",
            )
            if task.error_status is not None:
                lines.append(f"    error={task.error_status}: {task.error_message}")
        return lines

    def prune(self, command: PruneCommand) -> list[str]:
        settings = _settings(command.db_path)
        result = Pruner(settings.db_path, settings=settings).execute(
            PruneOptions(queues=command.queues, mode=command.mode, status=command.status),
        )
        if result.mode == "list":
            if not result.queues:
                return ["No matching queues"]
            return [f"{queue}: {age} days" for queue, age in result.queues.items()]
        lines = [
            "Prune completed: "
            f"queues={len(result.queues)} deleted={sum(result.deleted.values())} "
            f"failed={len(result.failed)}",
        ]
        lines.extend(f"  {queue}: deleted={count}" for queue, count in result.deleted.items())
        lines.extend(f"  {queue}: FAILED" for queue in result.failed)
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parameters(value: str | None) -> ParametersValue:
    return NO_PARAMS if value is None else value


@contextmanager
def _manager(
    db_path: Path | None,
    queue: str,
    parameters: ParametersValue,
) -> Iterator[Manager]:
    settings = _settings(db_path)
    manager = Manager(
        settings.db_path,
        ManagerConfig(queue=queue, tool=CLI_TOOL, parameters=parameters),
        settings=settings,
    )
    try:
        yield manager
    finally:
        manager.close(end_session=True)
