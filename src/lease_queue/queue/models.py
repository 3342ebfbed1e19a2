"""Domain models and typed option structs for the task queue."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lease_queue.errors import InconsistentParameters, InvalidParameter, MissingParameter
from lease_queue.queue.validation import (
    check_bool,
    check_identifier,
    check_int,
    check_json_blob,
    check_str,
    check_str_list,
)


class TaskStatus(int, Enum):
    """Durable task lifecycle states, stored as integer codes."""

    SUCCESS = 0
    PENDING = 1
    FAILURE = 2

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class _NoParams:
    """Marker for tasks that carry no runtime parameters."""

    _instance: _NoParams | None = None

    def __new__(cls) -> _NoParams:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_PARAMS"


NO_PARAMS = _NoParams()

ParametersValue = str | Mapping[str, Any] | Sequence[Any] | _NoParams


def serialize_parameters(value: Any, *, name: str = "parameters") -> str | None:
    """Normalize a parameters option to its stored form; ``None`` means no parameters."""

    if value is NO_PARAMS:
        return None
    if isinstance(value, str):
        return check_json_blob(name, value)
    if isinstance(value, Mapping | list | tuple):
        try:
            return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as error:
            raise InvalidParameter(f"Invalid {name}: not JSON-serializable") from error
    raise InvalidParameter(
        f"Invalid {name}: expected JSON string, mapping, list or NO_PARAMS; found {value!r}",
    )


def check_status_list(name: str, value: Any) -> tuple[TaskStatus, ...] | None:
    """Accept a status code or a non-empty list of status codes."""

    if value is None:
        return None
    items = [value] if isinstance(value, int) else value
    if isinstance(items, str) or not isinstance(items, Sequence) or not items:
        raise InvalidParameter(f"Invalid {name}: expected status code or list of codes")
    statuses: list[TaskStatus] = []
    for item in items:
        if isinstance(item, bool) or not isinstance(item, int):
            raise InvalidParameter(f"Invalid {name}: expected integer status; found {item!r}")
        try:
            statuses.append(TaskStatus(item))
        except ValueError as error:
            raise InvalidParameter(f"Invalid {name}: unsupported status {item}") from error
    return tuple(dict.fromkeys(statuses))


@dataclass(slots=True)
class ManagerConfig:
    """Construction options for :class:`~lease_queue.queue.manager.Manager`.

    ``parameters`` are the runtime parameters given to created tasks and used to
    select claimable tasks; pass ``NO_PARAMS`` to leave them unset. Supply either
    ``sessionid`` to attach to an existing processing session, or
    ``session_userid``/``session_lifetime`` (or neither) to start a new one.
    """

    queue: str | None = None
    tool: str | None = None
    parameters: ParametersValue = ""
    lifetime: int | None = None
    max_attempts: int | None = None
    sessionid: str | None = None
    session_userid: int | None = None
    session_lifetime: int | None = None
    serialized_parameters: str | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self.queue = check_identifier("queue", self.queue)
        tool = check_str("tool", self.tool, required=True)
        if not tool:
            raise InvalidParameter("Invalid tool: must be non-empty")
        self.serialized_parameters = serialize_parameters(self.parameters)
        check_int("lifetime", self.lifetime, minimum=1)
        check_int("max_attempts", self.max_attempts, minimum=1)
        check_str("sessionid", self.sessionid)
        check_int("session_userid", self.session_userid, minimum=1)
        check_int("session_lifetime", self.session_lifetime, minimum=1)
        if self.sessionid is not None and (
            self.session_userid is not None or self.session_lifetime is not None
        ):
            raise InconsistentParameters(
                "The option 'sessionid' is incompatible with the options "
                "'session_lifetime' and 'session_userid'",
            )


@dataclass(slots=True)
class TaskCreate:
    """Options for ``Manager.create_task``; unset values fall back to manager defaults."""

    data1: str | None = None
    data2: str | None = None
    data3: str | None = None
    parameters: ParametersValue | None = None
    lifetime: int | None = None
    max_attempts: int | None = None
    take_ownership: bool = True
    replace_existing: bool = False

    def __post_init__(self) -> None:
        for name in ("data1", "data2", "data3"):
            check_str(name, getattr(self, name))
        check_int("lifetime", self.lifetime, minimum=1)
        check_int("max_attempts", self.max_attempts, minimum=1)
        self.take_ownership = check_bool("take_ownership", self.take_ownership, default=True)
        self.replace_existing = check_bool(
            "replace_existing",
            self.replace_existing,
            default=False,
        )


@dataclass(slots=True)
class TaskFilter:
    """Row selection shared by ``claim_tasks`` and ``load_tasks``.

    Each of ``data1``..``data3`` is a string or a non-empty list of strings (OR
    within a field); fields combine with AND.
    """

    taskid: str | None = None
    data1: str | Sequence[str] | None = None
    data2: str | Sequence[str] | None = None
    data3: str | Sequence[str] | None = None
    status: TaskStatus | int | Sequence[int] | None = None
    max_tasks: int | None = None

    def __post_init__(self) -> None:
        check_str("taskid", self.taskid)
        self.data1 = check_str_list("data1", self.data1)
        self.data2 = check_str_list("data2", self.data2)
        self.data3 = check_str_list("data3", self.data3)
        self.status = check_status_list("status", self.status)
        check_int("max_tasks", self.max_tasks, minimum=1)


@dataclass(slots=True)
class TaskUpdate:
    """Options for ``Task.update``.

    Error details come either from ``error`` or from the
    ``error_status``/``error_message`` pair, never both.
    """

    maintain_ownership: bool = True
    error: BaseException | None = None
    error_status: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        self.maintain_ownership = check_bool(
            "maintain_ownership",
            self.maintain_ownership,
            default=True,
        )
        if self.error is not None and not isinstance(self.error, BaseException):
            raise InvalidParameter(f"Invalid error: expected exception; found {self.error!r}")
        check_str("error_status", self.error_status)
        check_str("error_message", self.error_message)
        if self.error is not None and self.error_status is not None:
            raise InconsistentParameters(
                "The options 'error' and 'error_status' are incompatible",
            )
        if (self.error_status is None) != (self.error_message is None):
            raise InconsistentParameters(
                "The options 'error_status' and 'error_message' must be specified together",
            )

    @property
    def has_error(self) -> bool:
        return self.error is not None or self.error_status is not None


@dataclass(slots=True)
class ProcessOptions:
    """Options for ``Manager.process_tasks``.

    ``action`` receives the task, plus the raw row when ``query_result`` drives
    the iteration. A falsy return or an exception marks the task failed.
    """

    action: Callable[..., Any] | None = None
    maintain_ownership: bool | None = None
    delete: bool = False
    touch_period: int | None = None
    query_result: Iterable[Mapping[str, Any]] | None = None

    def __post_init__(self) -> None:
        if self.action is None:
            raise MissingParameter("Missing action")
        if not callable(self.action):
            raise InvalidParameter(f"Invalid action: expected callable; found {self.action!r}")
        if self.maintain_ownership is not None:
            check_bool("maintain_ownership", self.maintain_ownership, default=True)
        self.delete = check_bool("delete", self.delete, default=False)
        check_int("touch_period", self.touch_period, minimum=1)
        if self.query_result is not None and (
            isinstance(self.query_result, str | bytes | Mapping)
            or not isinstance(self.query_result, Iterable)
        ):
            raise InvalidParameter("Invalid query_result: expected an iterable of rows")


@dataclass(slots=True)
class ProcessResult:
    """Outcome counters of one ``process_tasks`` batch."""

    total: int = 0
    success: int = 0

    @property
    def failure(self) -> int:
        return self.total - self.success


@dataclass(slots=True)
class ReclaimResult:
    """Outcome counters of one reclamation pass."""

    released: int = 0
    failed: int = 0
    sessions_purged: int = 0


@dataclass(slots=True)
class PruneOptions:
    """Raw options for ``Pruner.execute``; parsed and validated by the pruner."""

    queues: str | None = None
    mode: str = "execute"
    status: str | None = None


@dataclass(slots=True)
class PruneResult:
    """Resolved queue ages and per-queue deletion counts."""

    mode: str
    queues: dict[str, int] = field(default_factory=dict)
    deleted: dict[str, int] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)
