"""Queue manager: creates, claims, updates, and processes tasks for one session."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from types import TracebackType
from typing import Any

from sqlalchemy import ColumnElement, func, inspect, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import insert as sa_insert
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from lease_queue.config import Settings
from lease_queue.errors import (
    DatabaseError,
    InconsistentParameters,
    InvalidParameter,
    MissingParameter,
    ObjectDoesNotExist,
    ObjectExists,
    QueueError,
    StateError,
    error_fields,
)
from lease_queue.queue.models import (
    ManagerConfig,
    ProcessOptions,
    ProcessResult,
    ReclaimResult,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskUpdate,
    serialize_parameters,
)
from lease_queue.queue.reclamation import SessionReclaimer
from lease_queue.queue.sessions import ProcessingSession, SessionStore
from lease_queue.queue.task import Task
from lease_queue.queue.validation import check_str
from lease_queue.storage.common import build_sqlite_engine, unix_now
from lease_queue.storage.database import queue_exists
from lease_queue.storage.sqlmodel_models import SESSIONS_TABLE, queue_table

logger = logging.getLogger(__name__)


class Manager:
    """Entry point for one logical queue, bound to one processing session.

    Constructing a manager either attaches to an existing session
    (``config.sessionid``) or starts a new one, then runs a reclamation pass so
    that tasks held by dead sessions return to the pool before any claim.
    """

    def __init__(
        self,
        db_path: Path,
        config: ManagerConfig,
        *,
        settings: Settings | None = None,
    ) -> None:
        if not isinstance(config, ManagerConfig):
            raise InvalidParameter(f"Invalid config: expected ManagerConfig; found {config!r}")
        self.db_path = db_path
        self.config = config
        self.settings = settings or Settings(db_path=db_path)
        self.queue: str = config.queue  # type: ignore[assignment]
        self.tool: str = config.tool  # type: ignore[assignment]
        self.parameters = config.serialized_parameters

        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=self.settings.busy_timeout_ms,
        )
        try:
            if not inspect(self.engine).has_table(SESSIONS_TABLE):
                raise ObjectDoesNotExist(
                    f"Database {db_path} has no session table; run schema initialization first",
                )
            if not queue_exists(self.engine, self.queue):
                raise ObjectDoesNotExist(f"No such queue: {self.queue}")
            self.table = queue_table(self.queue)
            self.sessions = SessionStore(self.engine)
            self.session = self._start_or_attach_session()
            self._reclaimer = SessionReclaimer(
                engine=self.engine,
                table=self.table,
                sessions=self.sessions,
            )
            self.reclaimed = self.reclaim()
        except Exception:
            self.engine.dispose()
            raise

    @property
    def sessionid(self) -> str:
        return self.session.sessionid

    def close(self, *, end_session: bool = False) -> None:
        """Release DB resources; ``end_session`` also deletes the processing session."""

        if end_session:
            self.sessions.delete(self.sessionid)
        self.engine.dispose()

    def __enter__(self) -> Manager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def create_task(self, taskid: str, options: TaskCreate | None = None) -> Task:
        """Create a pending task, owned by this session unless ``take_ownership`` is off."""

        taskid = check_str("taskid", taskid, required=True)  # type: ignore[assignment]
        if not taskid:
            raise InvalidParameter("Invalid taskid: must be non-empty")
        options = options or TaskCreate()
        if not isinstance(options, TaskCreate):
            raise InvalidParameter(f"Invalid options: expected TaskCreate; found {options!r}")
        parameters = (
            self.parameters
            if options.parameters is None
            else serialize_parameters(options.parameters)
        )
        lifetime = options.lifetime if options.lifetime is not None else self.config.lifetime
        if lifetime is None:
            raise MissingParameter("Missing lifetime")
        max_attempts = (
            options.max_attempts if options.max_attempts is not None else self.config.max_attempts
        )

        created = unix_now()
        values: dict[str, Any] = {
            "taskid": taskid,
            "created": created,
            "expires": created + lifetime,
            "completed": None,
            "attempts": 0,
            "max_attempts": max_attempts,
            "status": TaskStatus.PENDING.value,
            "sessionid": self.sessionid if options.take_ownership else None,
            "parameters": parameters,
            "data1": options.data1,
            "data2": options.data2,
            "data3": options.data3,
            "error_status": None,
            "error_message": None,
        }
        logger.debug("Queue '%s': Creating task %s", self.queue, _encode_log(values))

        t = self.table
        with Session(self.engine) as session:
            try:
                existing = (
                    session.exec(sa_select(t).where(t.c.taskid == taskid)).mappings().one_or_none()
                )
                if existing is not None:
                    self._supersede(session, existing, replace=options.replace_existing)
                inserted = session.exec(sa_insert(t).values(**values))
                task_id = inserted.inserted_primary_key[0]
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ObjectExists(f"Queue '{self.queue}': Task exists: {taskid}") from error
            except SQLAlchemyError as error:
                session.rollback()
                raise DatabaseError(
                    f"Queue '{self.queue}': Failed creating task {_encode_log(values)}",
                ) from error

        task = Task.from_row({"id": task_id, **values}, manager=self)
        logger.debug("Queue '%s': Created task %s", self.queue, task)
        return task

    def claim_tasks(self, filters: TaskFilter | None = None) -> int:
        """Take ownership of unowned, claimable tasks in ascending ``id`` order.

        The claim is one conditional ``UPDATE`` whose ``sessionid IS NULL`` guard
        means two managers racing for the same rows can never both win a row.
        Returns the number of tasks claimed.
        """

        filters = _require_filter(filters)
        if filters.status is not None and TaskStatus.PENDING not in filters.status:
            return 0
        t = self.table
        now = unix_now()
        candidates = (
            sa_select(t.c.id)
            .where(
                *self._filter_conditions(filters),
                t.c.sessionid.is_(None),
                t.c.status == TaskStatus.PENDING.value,
                t.c.expires >= now,
                or_(t.c.max_attempts.is_(None), t.c.attempts < t.c.max_attempts),
            )
            .order_by(t.c.id)
        )
        if filters.max_tasks is not None:
            candidates = candidates.limit(filters.max_tasks)
        logger.debug("Queue '%s': Claiming tasks %s", self.queue, filters)
        with Session(self.engine) as session:
            try:
                result = session.exec(
                    sa_update(t)
                    .where(t.c.id.in_(candidates), t.c.sessionid.is_(None))
                    .values(sessionid=self.sessionid),
                )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise DatabaseError(f"Queue '{self.queue}': Failed claiming tasks") from error
        logger.debug("Queue '%s': Claimed %d tasks", self.queue, result.rowcount)
        return result.rowcount

    def load_tasks(self, filters: TaskFilter | None = None) -> list[Task]:
        """Return tasks matching ``filters`` ordered by ``id``, without side effects."""

        filters = _require_filter(filters)
        t = self.table
        statement = sa_select(t).where(*self._filter_conditions(filters)).order_by(t.c.id)
        if filters.status is not None:
            statement = statement.where(t.c.status.in_([s.value for s in filters.status]))
        if filters.max_tasks is not None:
            statement = statement.limit(filters.max_tasks)
        with Session(self.engine) as session:
            rows = session.exec(statement).mappings().all()
        return [Task.from_row(row, manager=self) for row in rows]

    def update_task(self, task: Task, status: TaskStatus | int, options: TaskUpdate) -> None:
        """Transition a task owned by this session.

        ``PENDING`` counts one attempt and keeps or drops ownership according to
        ``maintain_ownership``; ``SUCCESS`` and ``FAILURE`` always drop ownership
        and stamp ``completed``.
        """

        status = _coerce_status(status)
        if not isinstance(options, TaskUpdate):
            raise InvalidParameter(f"Invalid options: expected TaskUpdate; found {options!r}")
        if status is TaskStatus.SUCCESS and options.has_error:
            raise InconsistentParameters(
                "The options 'error' and 'error_status' are incompatible with SUCCESS",
            )
        if task.sessionid != self.sessionid:
            raise StateError(
                f"Queue '{self.queue}': Task {task.taskid} is not owned by session "
                f"{self.sessionid}",
            )
        error_status, error_message = options.error_status, options.error_message
        if options.error is not None:
            error_status, error_message = error_fields(options.error)

        t = self.table
        now = unix_now()
        if status.is_terminal:
            sessionid = None
            completed = now
            attempts = task.attempts
        else:
            sessionid = self.sessionid if options.maintain_ownership else None
            completed = None
            attempts = task.attempts + 1
        with Session(self.engine) as session:
            try:
                result = session.exec(
                    sa_update(t)
                    .where(
                        t.c.id == task.id,
                        t.c.sessionid == self.sessionid,
                        t.c.status == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=status.value,
                        attempts=attempts,
                        sessionid=sessionid,
                        completed=completed,
                        error_status=error_status,
                        error_message=error_message,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise StateError(
                        f"Queue '{self.queue}': Task {task.taskid} is no longer owned by "
                        f"session {self.sessionid}",
                    )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise DatabaseError(
                    f"Queue '{self.queue}': Failed updating task {task.taskid} to {status.name}",
                ) from error

        task.status = status
        task.attempts = attempts
        task.sessionid = sessionid
        task.completed = completed
        task.error_status = error_status
        task.error_message = error_message
        if status is TaskStatus.FAILURE:
            logger.warning("Queue '%s': Task marked failed: %s", self.queue, task)
        else:
            logger.debug("Queue '%s': Updated task %s", self.queue, task)

    def delete_task(self, task: Task) -> None:
        """Delete a task that is unowned or owned by this session."""

        if task.sessionid is not None and task.sessionid != self.sessionid:
            raise StateError(
                f"Queue '{self.queue}': Task {task.taskid} is owned by another session",
            )
        t = self.table
        owner_matches = (
            t.c.sessionid.is_(None) if task.sessionid is None else t.c.sessionid == task.sessionid
        )
        with Session(self.engine) as session:
            try:
                result = session.exec(sa_delete(t).where(t.c.id == task.id, owner_matches))
                if result.rowcount != 1:
                    session.rollback()
                    raise StateError(
                        f"Queue '{self.queue}': Task {task.taskid} changed before deletion",
                    )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise DatabaseError(
                    f"Queue '{self.queue}': Failed deleting task {task.taskid}",
                ) from error
        logger.debug("Queue '%s': Deleted task %s", self.queue, task.taskid)

    def set_data(self, task: Task, name: str, value: str) -> None:
        """Overwrite one of ``data1``..``data3`` on a task this session owns."""

        if name not in {"data1", "data2", "data3"}:
            raise InvalidParameter(f"Invalid data column: {name}")
        check_str(name, value, required=True)
        if task.sessionid != self.sessionid:
            raise StateError(
                f"Queue '{self.queue}': Task {task.taskid} is not owned by session "
                f"{self.sessionid}",
            )
        t = self.table
        with Session(self.engine) as session:
            try:
                result = session.exec(
                    sa_update(t)
                    .where(t.c.id == task.id, t.c.sessionid == self.sessionid)
                    .values({name: value}),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise StateError(
                        f"Queue '{self.queue}': Task {task.taskid} is no longer owned by "
                        f"session {self.sessionid}",
                    )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise DatabaseError(
                    f"Queue '{self.queue}': Failed setting {name} on task {task.taskid}",
                ) from error
        setattr(task, name, value)

    def process_tasks(self, options: ProcessOptions) -> ProcessResult:
        """Run ``options.action`` on every task this session owns.

        Action failures, whether a falsy return or an exception, never abort the
        batch: they become ``PENDING`` updates (or deletions) and are counted.
        """

        if not isinstance(options, ProcessOptions):
            raise InvalidParameter(f"Invalid options: expected ProcessOptions; found {options!r}")
        touch_period = options.touch_period or self.settings.processing.touch_period
        maintain_ownership = (
            True if options.maintain_ownership is None else options.maintain_ownership
        )
        action = options.action
        if action is None:
            raise MissingParameter("Missing action")
        rows: Iterable[Any]
        if options.query_result is None:
            custom = False
            rows = self._owned_rows()
        else:
            custom = True
            rows = options.query_result

        result = ProcessResult()
        for raw in rows:
            try:
                row = _row_mapping(raw)
                task = Task.from_row(row, manager=self)
            except QueueError as error:
                if not custom:
                    raise
                raise StateError(
                    f"Query result row does not decode into a task: {error.details}",
                ) from error
            if custom and task.sessionid != self.sessionid:
                raise StateError(
                    f"Query result contains row for task {task.taskid} not owned by manager",
                )
            logger.debug("Queue '%s': Processing task %s", self.queue, task.taskid)
            succeeded, error = self._run_action(action, task, row if custom else None)
            if options.delete:
                self.delete_task(task)
            elif succeeded:
                task.update(TaskStatus.SUCCESS)
            else:
                task.update(
                    TaskStatus.PENDING,
                    TaskUpdate(maintain_ownership=maintain_ownership, error=error),
                )
            result.total += 1
            if succeeded:
                result.success += 1
            if touch_period and result.total % touch_period == 0:
                self.touch_session()

        logger.info(
            "Queue '%s': Processed %d tasks (%d succeeded)",
            self.queue,
            result.total,
            result.success,
        )
        return result

    def touch_session(self) -> None:
        """Extend this manager's session lease."""

        self.session = self.sessions.touch(self.session)

    def reclaim(self) -> ReclaimResult:
        """Release or fail tasks owned by expired or deleted sessions."""

        return self._reclaimer.run()

    def status_counts(self) -> dict[TaskStatus, int]:
        """Count tasks per status among those matching this manager's parameters."""

        t = self.table
        counts = dict.fromkeys(TaskStatus, 0)
        statement = (
            sa_select(t.c.status, func.count())
            .where(*self._parameter_conditions())
            .group_by(t.c.status)
        )
        with Session(self.engine) as session:
            for status, count in session.exec(statement).all():
                counts[TaskStatus(status)] = count
        return counts

    def clear_sessions(self) -> int:
        """Release every owned pending task matching this manager's parameters.

        Ownership is revoked regardless of session liveness, counting one
        attempt per task; intended for operators recovering a stuck queue.
        """

        t = self.table
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(t)
                .where(
                    *self._parameter_conditions(),
                    t.c.sessionid.is_not(None),
                    t.c.status == TaskStatus.PENDING.value,
                )
                .values(sessionid=None, attempts=t.c.attempts + 1),
            )
            session.commit()
        logger.info("Queue '%s': Cleared ownership of %d tasks", self.queue, result.rowcount)
        return result.rowcount

    def dump_queue(self) -> None:
        """Write every row of the queue to the debug log."""

        if not logger.isEnabledFor(logging.DEBUG):
            return
        for task in self.load_tasks():
            logger.debug("Queue '%s': %s", self.queue, task)

    def _start_or_attach_session(self) -> ProcessingSession:
        if self.config.sessionid is not None:
            return self.sessions.load(self.config.sessionid)
        return self.sessions.create(
            userid=self.config.session_userid or self.settings.session.userid,
            lifetime=self.config.session_lifetime or self.settings.session.lifetime_seconds,
        )

    def _supersede(self, session: Session, existing: Mapping[str, Any], *, replace: bool) -> None:
        taskid = existing["taskid"]
        if not replace:
            raise ObjectExists(f"Queue '{self.queue}': Task exists: {taskid}")
        owner = existing["sessionid"]
        if owner is not None and owner != self.sessionid and self.sessions.is_live(owner):
            raise ObjectExists(
                f"Queue '{self.queue}': Task {taskid} is owned by another processor",
            )
        t = self.table
        owner_matches = t.c.sessionid.is_(None) if owner is None else t.c.sessionid == owner
        result = session.exec(sa_delete(t).where(t.c.id == existing["id"], owner_matches))
        if result.rowcount != 1:
            raise ObjectExists(
                f"Queue '{self.queue}': Task {taskid} changed while being replaced",
            )
        logger.debug("Queue '%s': Replacing task %s", self.queue, taskid)

    def _owned_rows(self) -> list[Mapping[str, Any]]:
        t = self.table
        with Session(self.engine) as session:
            return list(
                session.exec(
                    sa_select(t)
                    .where(
                        t.c.sessionid == self.sessionid,
                        t.c.status == TaskStatus.PENDING.value,
                    )
                    .order_by(t.c.id),
                )
                .mappings()
                .all(),
            )

    def _parameter_conditions(self) -> list[ColumnElement[bool]]:
        # Exact string equality on the serialized blob; parameterless tasks match any manager.
        if self.parameters is None:
            return []
        t = self.table
        return [or_(t.c.parameters == self.parameters, t.c.parameters.is_(None))]

    def _filter_conditions(self, filters: TaskFilter) -> list[ColumnElement[bool]]:
        t = self.table
        conditions = self._parameter_conditions()
        if filters.taskid is not None:
            conditions.append(t.c.taskid == filters.taskid)
        for name in ("data1", "data2", "data3"):
            values = getattr(filters, name)
            if values is not None:
                conditions.append(t.c[name].in_(list(values)))
        return conditions

    def _run_action(
        self,
        action: Callable[..., Any],
        task: Task,
        row: Mapping[str, Any] | None,
    ) -> tuple[bool, BaseException | None]:
        try:
            outcome = action(task) if row is None else action(task, row)
        except Exception as error:
            logger.exception("Queue '%s': Task %s raised during processing", self.queue, task.taskid)
            return False, error
        return bool(outcome), None


def _require_filter(filters: TaskFilter | None) -> TaskFilter:
    if filters is None:
        return TaskFilter()
    if not isinstance(filters, TaskFilter):
        raise InvalidParameter(f"Invalid filters: expected TaskFilter; found {filters!r}")
    return filters


def _coerce_status(status: TaskStatus | int) -> TaskStatus:
    if isinstance(status, bool) or not isinstance(status, int):
        raise InvalidParameter(f"Invalid status: expected integer; found {status!r}")
    try:
        return TaskStatus(status)
    except ValueError as error:
        raise InvalidParameter(f"Unsupported status: {status}") from error


def _row_mapping(raw: Any) -> Mapping[str, Any]:
    mapping = getattr(raw, "_mapping", raw)
    if not isinstance(mapping, Mapping):
        raise InvalidParameter(f"Invalid queue row: expected mapping; found {raw!r}")
    return mapping


def _encode_log(values: Mapping[str, Any]) -> str:
    return json.dumps(
        {key: value for key, value in values.items() if value is not None},
        ensure_ascii=False,
        sort_keys=True,
    )
