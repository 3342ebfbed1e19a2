"""Task entity: one validated row of a logical queue."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from lease_queue.errors import InconsistentParameters, InvalidParameter, MissingParameter, StateError
from lease_queue.queue.models import TaskStatus, TaskUpdate
from lease_queue.queue.validation import check_int, check_str

if TYPE_CHECKING:
    from lease_queue.queue.manager import Manager

REQUIRED_ROW_KEYS = ("id", "taskid", "created", "parameters", "expires", "attempts", "status")
OPTIONAL_ROW_KEYS = (
    "completed",
    "max_attempts",
    "sessionid",
    "data1",
    "data2",
    "data3",
    "error_status",
    "error_message",
)


@dataclass(slots=True)
class Task:
    """A unit of work stored in a queue table.

    Timestamps are whole UNIX seconds. Instances built by a
    :class:`~lease_queue.queue.manager.Manager` keep a reference to it so that
    ``update``, ``delete`` and the ``set_data*`` helpers can write through.
    """

    id: int
    taskid: str
    created: int
    expires: int
    parameters: str | None
    attempts: int
    status: TaskStatus
    max_attempts: int | None = None
    completed: int | None = None
    sessionid: str | None = None
    data1: str | None = None
    data2: str | None = None
    data3: str | None = None
    error_status: str | None = None
    error_message: str | None = None
    manager: Manager | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        check_int("id", self.id, required=True)
        check_str("taskid", self.taskid, required=True)
        check_int("created", self.created, required=True)
        check_int("expires", self.expires, required=True)
        check_int("attempts", self.attempts, required=True)
        check_int("max_attempts", self.max_attempts)
        check_int("completed", self.completed)
        if self.parameters is not None:
            check_str("parameters", self.parameters)
        for name in ("sessionid", "data1", "data2", "data3", "error_status", "error_message"):
            check_str(name, getattr(self, name))
        if self.status is None:
            raise MissingParameter("Missing status")
        if isinstance(self.status, bool) or not isinstance(self.status, int):
            raise InvalidParameter(f"Invalid status: expected integer; found {self.status!r}")
        try:
            self.status = TaskStatus(self.status)
        except ValueError as error:
            raise InvalidParameter(f"Unsupported status: {self.status}") from error
        if (self.error_status is None) != (self.error_message is None):
            raise InconsistentParameters(
                "The fields 'error_status' and 'error_message' must be specified together",
            )

    @classmethod
    def from_row(cls, row: Mapping[str, Any], manager: Manager | None = None) -> Task:
        """Build a task from a raw stored row; extra columns are ignored."""

        if not isinstance(row, Mapping):
            raise InvalidParameter(f"Invalid queue row: expected mapping; found {row!r}")
        values: dict[str, Any] = {}
        for key in REQUIRED_ROW_KEYS:
            if key not in row:
                raise MissingParameter(f"Missing {key} in queue row")
            values[key] = row[key]
        for key in OPTIONAL_ROW_KEYS:
            values[key] = row.get(key)
        return cls(**values, manager=manager)

    def encode(self) -> dict[str, Any]:
        """Return a JSON-compatible row that ``from_row`` turns back into an equal task."""

        return {
            "id": self.id,
            "taskid": self.taskid,
            "created": self.created,
            "expires": self.expires,
            "parameters": self.parameters,
            "attempts": self.attempts,
            "status": self.status.value,
            "max_attempts": self.max_attempts,
            "completed": self.completed,
            "sessionid": self.sessionid,
            "data1": self.data1,
            "data2": self.data2,
            "data3": self.data3,
            "error_status": self.error_status,
            "error_message": self.error_message,
        }

    def update(self, status: TaskStatus | int, options: TaskUpdate | None = None) -> None:
        """Transition this task; see ``Manager.update_task``."""

        self._require_manager().update_task(self, status, options or TaskUpdate())

    def delete(self) -> None:
        self._require_manager().delete_task(self)

    def set_data1(self, value: str) -> None:
        self._require_manager().set_data(self, "data1", value)

    def set_data2(self, value: str) -> None:
        self._require_manager().set_data(self, "data2", value)

    def set_data3(self, value: str) -> None:
        self._require_manager().set_data(self, "data3", value)

    def _require_manager(self) -> Manager:
        if self.manager is None:
            raise StateError(f"Task {self.taskid} is not bound to a queue manager")
        return self.manager

    def __str__(self) -> str:
        return json.dumps(
            {key: value for key, value in self.encode().items() if value is not None},
            ensure_ascii=False,
            sort_keys=True,
        )
