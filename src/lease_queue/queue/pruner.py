"""Retention pruning across queue tables selected by wildcard patterns."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from lease_queue.config import Settings
from lease_queue.errors import InvalidParameter, MissingParameter
from lease_queue.queue.models import PruneOptions, PruneResult, TaskStatus
from lease_queue.queue.pattern import GlobPattern
from lease_queue.queue.validation import check_str
from lease_queue.storage.common import build_sqlite_engine, unix_now
from lease_queue.storage.database import list_queue_tables
from lease_queue.storage.sqlmodel_models import queue_table

logger = logging.getLogger(__name__)

PRUNE_MODES = ("list", "execute")
DEFAULT_MODE = "execute"
SECONDS_PER_DAY = 24 * 3600


@dataclass(frozen=True, slots=True)
class PruneRule:
    """Maximum age in days for queues whose names match ``pattern``."""

    pattern: GlobPattern
    age_days: int


def parse_prune_rules(queues: str) -> list[PruneRule]:
    """Parse ``pattern:age[, pattern:age ...]`` into rules, keeping their order."""

    if not queues.isascii():
        raise InvalidParameter("The option 'queues' must be ASCII")
    rules: list[PruneRule] = []
    for item in queues.strip().split(","):
        spec = item.strip()
        pattern, sep, age = spec.partition(":")
        if not sep or not pattern or not _is_age(age):
            raise InvalidParameter(
                "Invalid maximum age specification: expected value of the form "
                f"'pattern:age': found '{spec}'",
            )
        rules.append(PruneRule(pattern=GlobPattern.compile(pattern), age_days=int(age)))
    return rules


def parse_status_list(status: str) -> tuple[TaskStatus, ...]:
    """Parse a comma-separated subset of ``SUCCESS,PENDING,FAILURE``."""

    statuses: list[TaskStatus] = []
    for item in status.strip().split(","):
        name = item.strip()
        if name not in TaskStatus.__members__:
            raise InvalidParameter(f"Invalid status list: {status}")
        statuses.append(TaskStatus[name])
    return tuple(dict.fromkeys(statuses))


def _fallback(value: str | None, default: str | None) -> str | None:
    # Only an omitted option takes the default; an empty string is validated as given.
    return default if value is None else value


def _is_age(text: str) -> bool:
    if not text or not text.isdigit() or not text.isascii():
        return False
    return text == "0" or text[0] != "0"


class Pruner:
    """Deletes old tasks from every queue matched by a retention rule."""

    def __init__(self, db_path: Path, settings: Settings | None = None) -> None:
        self.db_path = db_path
        self.settings = settings or Settings(db_path=db_path)

    def execute(self, options: PruneOptions | None = None) -> PruneResult:
        options = options or PruneOptions()
        queues = _fallback(check_str("queues", options.queues), self.settings.prune.queues)
        if queues is None:
            raise MissingParameter("Missing queues")
        mode = _fallback(check_str("mode", options.mode), DEFAULT_MODE)
        if mode not in PRUNE_MODES:
            raise InvalidParameter(f"Unsupported mode: {mode!r}")
        status_text = _fallback(check_str("status", options.status), self.settings.prune.status)
        rules = parse_prune_rules(queues)
        statuses = parse_status_list(status_text) if status_text is not None else None

        engine = build_sqlite_engine(
            db_path=self.db_path,
            busy_timeout_ms=self.settings.busy_timeout_ms,
        )
        try:
            ages, unmatched = self._resolve(list_queue_tables(engine), rules)
            result = PruneResult(mode=mode, queues=ages)
            if mode == "list":
                return result

            if not ages:
                logger.warning("No matching queues")
            else:
                for pattern in unmatched:
                    logger.warning("No queues match pattern '%s'", pattern)
            for queue, age in ages.items():
                deleted = self._prune_queue(engine, queue, age, statuses)
                if deleted is None:
                    result.failed.append(queue)
                else:
                    result.deleted[queue] = deleted
            return result
        finally:
            engine.dispose()

    @staticmethod
    def _resolve(
        tables: list[str],
        rules: list[PruneRule],
    ) -> tuple[dict[str, int], list[str]]:
        ages: dict[str, int] = {}
        hits = dict.fromkeys((rule.pattern.text for rule in rules), 0)
        for table in tables:
            for rule in rules:
                if rule.pattern.matches(table):
                    ages[table] = rule.age_days
                    hits[rule.pattern.text] += 1
                    break
        return ages, [pattern for pattern, count in hits.items() if count == 0]

    def _prune_queue(
        self,
        engine: Engine,
        queue: str,
        age: int,
        statuses: tuple[TaskStatus, ...] | None,
    ) -> int | None:
        status_desc = (
            " with status in " + ",".join(status.name for status in statuses) if statuses else ""
        )
        logger.info("Deleting tasks from %s older than %d days%s", queue, age, status_desc)
        t = queue_table(queue)
        statement = sa_delete(t)
        if age != 0:
            statement = statement.where(t.c.created < unix_now() - age * SECONDS_PER_DAY)
        if statuses is not None:
            statement = statement.where(t.c.status.in_([status.value for status in statuses]))
        try:
            with Session(engine) as session:
                deleted = session.exec(statement).rowcount
                session.commit()
        except SQLAlchemyError:
            logger.exception("Failed deleting tasks from %s", queue)
            return None
        logger.debug("Deleted %d tasks from %s", deleted, queue)
        return deleted
