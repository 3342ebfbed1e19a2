"""Error taxonomy shared by queue managers, tasks, and the pruner."""

from __future__ import annotations

from enum import Enum


class ErrorStatus(str, Enum):
    """Machine-readable error categories."""

    MISSING_PARAMETER = "MISSING_PARAMETER"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    INCONSISTENT_PARAMETERS = "INCONSISTENT_PARAMETERS"
    OBJECT_DOES_NOT_EXIST = "OBJECT_DOES_NOT_EXIST"
    OBJECT_EXISTS = "OBJECT_EXISTS"
    STATE_ERROR = "STATE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


class QueueError(Exception):
    """Base error carrying an :class:`ErrorStatus` and a human-readable detail."""

    status: ErrorStatus = ErrorStatus.STATE_ERROR

    def __init__(self, details: str) -> None:
        super().__init__(details)
        self.details = details

    def __str__(self) -> str:
        return f"{self.status.value}: {self.details}"


class MissingParameter(QueueError):
    status = ErrorStatus.MISSING_PARAMETER


class InvalidParameter(QueueError):
    status = ErrorStatus.INVALID_PARAMETER


class InconsistentParameters(QueueError):
    status = ErrorStatus.INCONSISTENT_PARAMETERS


class ObjectDoesNotExist(QueueError):
    status = ErrorStatus.OBJECT_DOES_NOT_EXIST


class ObjectExists(QueueError):
    status = ErrorStatus.OBJECT_EXISTS


class StateError(QueueError):
    status = ErrorStatus.STATE_ERROR


class DatabaseError(QueueError):
    status = ErrorStatus.DATABASE_ERROR


def error_fields(error: BaseException) -> tuple[str, str]:
    """Derive the stored ``(error_status, error_message)`` pair from an exception."""

    if isinstance(error, QueueError):
        return error.status.value, error.details
    return type(error).__name__, str(error) or type(error).__name__
