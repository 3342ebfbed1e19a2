"""Release or fail tasks whose processing session has gone away.

A task owned by an expired or deleted session goes back to the claimable pool
with one more attempt counted, unless that attempt exhausts ``max_attempts`` or
the task itself has expired, in which case it fails permanently. Unowned
pending tasks that have expired or run out of attempts are failed as well.
Every row change is a compare-and-swap on the row's owner and status, so
concurrent passes from several managers never double-count an attempt.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import Table, and_, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from lease_queue.errors import DatabaseError
from lease_queue.queue.models import ReclaimResult, TaskStatus
from lease_queue.queue.sessions import SessionStore
from lease_queue.queue.task import Task
from lease_queue.storage.common import format_timestamp, unix_now
from lease_queue.storage.sqlmodel_models import ProcessingSessionRow

logger = logging.getLogger(__name__)

SESSION_EXPIRED = "SESSION_EXPIRED"
TASK_EXPIRED = "TASK_EXPIRED"
ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"


class SessionReclaimer:
    """One queue's reclamation pass; safe to run repeatedly and concurrently."""

    def __init__(self, *, engine: Engine, table: Table, sessions: SessionStore) -> None:
        self.engine = engine
        self.table = table
        self.sessions = sessions

    @property
    def queue(self) -> str:
        return self.table.name

    def run(self) -> ReclaimResult:
        result = ReclaimResult(sessions_purged=self.sessions.purge_expired())
        now = unix_now()
        failed: list[dict[str, Any]] = []
        try:
            with Session(self.engine) as session:
                for row in self._orphaned_rows(session, now):
                    outcome = self._release_or_fail(session, row, now)
                    if outcome is None:
                        continue
                    if outcome["status"] == TaskStatus.FAILURE:
                        failed.append(outcome)
                    else:
                        result.released += 1
                for row in self._stale_unowned_rows(session, now):
                    outcome = self._fail_unowned(session, row, now)
                    if outcome is not None:
                        failed.append(outcome)
                session.commit()
        except SQLAlchemyError as error:
            raise DatabaseError(f"Queue '{self.queue}': Failed reclaiming tasks") from error

        result.failed = len(failed)
        for row in failed:
            logger.critical(
                "Queue '%s': Task failed permanently: %s",
                self.queue,
                json.dumps(Task.from_row(row).encode(), sort_keys=True),
            )
        if result.released or result.failed:
            logger.info(
                "Queue '%s': reclaimed tasks released=%d failed=%d",
                self.queue,
                result.released,
                result.failed,
            )
        return result

    def _orphaned_rows(self, session: Session, now: int) -> list[Mapping[str, Any]]:
        t = self.table
        sessions_table = ProcessingSessionRow.__table__
        statement = (
            sa_select(t)
            .select_from(
                t.outerjoin(sessions_table, sessions_table.c.sessionid == t.c.sessionid),
            )
            .where(
                t.c.status == TaskStatus.PENDING.value,
                t.c.sessionid.is_not(None),
                or_(sessions_table.c.id.is_(None), sessions_table.c.expires < now),
            )
            .order_by(t.c.id)
        )
        return list(session.exec(statement).mappings().all())

    def _stale_unowned_rows(self, session: Session, now: int) -> list[Mapping[str, Any]]:
        t = self.table
        statement = (
            sa_select(t)
            .where(
                t.c.status == TaskStatus.PENDING.value,
                t.c.sessionid.is_(None),
                or_(
                    t.c.expires < now,
                    and_(t.c.max_attempts.is_not(None), t.c.attempts >= t.c.max_attempts),
                ),
            )
            .order_by(t.c.id)
        )
        return list(session.exec(statement).mappings().all())

    def _release_or_fail(
        self,
        session: Session,
        row: Mapping[str, Any],
        now: int,
    ) -> dict[str, Any] | None:
        attempts = row["attempts"] + 1
        max_attempts = row["max_attempts"]
        values: dict[str, Any] = {"sessionid": None, "attempts": attempts}
        if row["expires"] < now:
            values.update(
                status=TaskStatus.FAILURE.value,
                completed=now,
                error_status=TASK_EXPIRED,
                error_message=f"Task expired at {format_timestamp(row['expires'])}",
            )
        elif max_attempts is not None and attempts >= max_attempts:
            values.update(
                status=TaskStatus.FAILURE.value,
                completed=now,
                error_status=SESSION_EXPIRED,
                error_message=(
                    f"Processing session {row['sessionid']} ended; "
                    f"attempts exhausted ({attempts}/{max_attempts})"
                ),
            )
        return self._swap(session, row, values, expected_owner=row["sessionid"])

    def _fail_unowned(
        self,
        session: Session,
        row: Mapping[str, Any],
        now: int,
    ) -> dict[str, Any] | None:
        if row["expires"] < now:
            error_status = TASK_EXPIRED
            error_message = f"Task expired at {format_timestamp(row['expires'])}"
        else:
            error_status = ATTEMPTS_EXHAUSTED
            error_message = f"Attempts exhausted ({row['attempts']}/{row['max_attempts']})"
        values = {
            "status": TaskStatus.FAILURE.value,
            "completed": now,
            "error_status": error_status,
            "error_message": error_message,
        }
        return self._swap(session, row, values, expected_owner=None)

    def _swap(
        self,
        session: Session,
        row: Mapping[str, Any],
        values: dict[str, Any],
        *,
        expected_owner: str | None,
    ) -> dict[str, Any] | None:
        t = self.table
        owner_matches = (
            t.c.sessionid.is_(None) if expected_owner is None else t.c.sessionid == expected_owner
        )
        result = session.exec(
            sa_update(t)
            .where(
                t.c.id == row["id"],
                owner_matches,
                t.c.status == TaskStatus.PENDING.value,
            )
            .values(**values),
        )
        if result.rowcount != 1:
            logger.debug("Queue '%s': task %s changed concurrently", self.queue, row["taskid"])
            return None
        updated = {**dict(row), **values}
        logger.debug(
            "Queue '%s': reclaimed task %s -> %s",
            self.queue,
            row["taskid"],
            TaskStatus(updated["status"]).name,
        )
        return updated
