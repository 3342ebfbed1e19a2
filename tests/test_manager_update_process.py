from __future__ import annotations

import logging

import allure
import pytest

from lease_queue.errors import (
    DatabaseError,
    InconsistentParameters,
    InvalidParameter,
    MissingParameter,
    ObjectDoesNotExist,
    StateError,
)
from lease_queue.queue.models import ProcessOptions, TaskCreate, TaskStatus, TaskUpdate

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Updates & Batch Processing"),
]


def test_success_clears_ownership_and_sets_completed(make_manager, task_row) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    task.update(TaskStatus.SUCCESS)

    stored = task_row("t1")
    assert stored["status"] == 0
    assert stored["sessionid"] is None
    assert stored["completed"] is not None
    assert stored["attempts"] == 0
    assert task.status is TaskStatus.SUCCESS
    assert task.completed == stored["completed"]


def test_pending_update_counts_attempt_and_keeps_ownership(make_manager, task_row) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    task.update(TaskStatus.PENDING, TaskUpdate(error_status="TIMEOUT", error_message="slow"))

    stored = task_row("t1")
    assert stored["attempts"] == 1
    assert stored["sessionid"] == manager.sessionid
    assert stored["error_status"] == "TIMEOUT"
    assert stored["completed"] is None


def test_pending_update_can_release_ownership(make_manager, task_row) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    task.update(TaskStatus.PENDING, TaskUpdate(maintain_ownership=False))

    assert task_row("t1")["sessionid"] is None
    assert task.sessionid is None


def test_failure_update_records_exception_and_logs_warning(
    make_manager,
    task_row,
    caplog: pytest.LogCaptureFixture,
) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    with caplog.at_level(logging.DEBUG, logger="lease_queue"):
        task.update(TaskStatus.FAILURE, TaskUpdate(error=RuntimeError("boom")))

    stored = task_row("t1")
    assert stored["status"] == 2
    assert (stored["error_status"], stored["error_message"]) == ("RuntimeError", "boom")
    assert not [record for record in caplog.records if record.levelno >= logging.CRITICAL]
    assert any(record.levelno == logging.WARNING for record in caplog.records)


def test_queue_error_keeps_its_status_when_recorded(make_manager, task_row) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    task.update(TaskStatus.FAILURE, TaskUpdate(error=ObjectDoesNotExist("input gone")))

    stored = task_row("t1")
    assert (stored["error_status"], stored["error_message"]) == (
        "OBJECT_DOES_NOT_EXIST",
        "input gone",
    )


def test_success_rejects_error_details(make_manager) -> None:
    task = make_manager().create_task("t1")

    with pytest.raises(InconsistentParameters):
        task.update(TaskStatus.SUCCESS, TaskUpdate(error=ValueError("x")))


def test_update_options_validation() -> None:
    with pytest.raises(InconsistentParameters):
        TaskUpdate(error=ValueError("x"), error_status="E", error_message="m")
    with pytest.raises(InconsistentParameters):
        TaskUpdate(error_status="E")
    with pytest.raises(InvalidParameter):
        TaskUpdate(maintain_ownership="yes")  # type: ignore[arg-type]


def test_update_requires_ownership(make_manager) -> None:
    creator = make_manager()
    task = creator.create_task("t1", TaskCreate(take_ownership=False))

    with pytest.raises(StateError):
        task.update(TaskStatus.SUCCESS)


def test_terminal_task_cannot_be_updated_again(make_manager) -> None:
    manager = make_manager()
    task = manager.create_task("t1")
    task.update(TaskStatus.FAILURE)

    with pytest.raises(StateError):
        task.update(TaskStatus.PENDING)


def test_stale_task_object_loses_compare_and_swap(make_manager, execute_sql) -> None:
    manager = make_manager()
    task = manager.create_task("t1")
    execute_sql("UPDATE jobs SET sessionid = 'someone-else' WHERE taskid = 't1'")

    with pytest.raises(StateError, match="no longer owned"):
        task.update(TaskStatus.SUCCESS)


def test_update_rejects_unknown_status(make_manager) -> None:
    task = make_manager().create_task("t1")

    with pytest.raises(InvalidParameter):
        task.update(5)


def test_set_data_writes_through(make_manager, task_row) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    task.set_data1("one")
    task.set_data3("three")

    stored = task_row("t1")
    assert (stored["data1"], stored["data2"], stored["data3"]) == ("one", None, "three")
    assert task.data1 == "one"


def test_set_data_failure_is_reported_and_not_applied(
    make_manager,
    execute_sql,
    task_row,
) -> None:
    manager = make_manager()
    task = manager.create_task("t1")
    execute_sql(
        "CREATE TRIGGER jobs_data_locked BEFORE UPDATE OF data1 ON jobs "
        "BEGIN SELECT RAISE(ABORT, 'data locked'); END",
    )

    with pytest.raises(DatabaseError, match="Failed setting data1 on task t1"):
        task.set_data1("one")
    assert task.data1 is None
    assert task_row("t1")["data1"] is None


def test_delete_removes_owned_task(make_manager, execute_sql) -> None:
    manager = make_manager()
    task = manager.create_task("t1")

    task.delete()

    assert execute_sql("SELECT COUNT(*) FROM jobs")[0][0] == 0


def test_delete_refuses_task_of_other_session(make_manager) -> None:
    owner = make_manager()
    owner.create_task("t1")
    other = make_manager()
    task = other.load_tasks()[0]

    with pytest.raises(StateError):
        task.delete()


def test_process_tasks_counts_success_and_failure(make_manager, task_row) -> None:
    manager = make_manager()
    for taskid in ("ok", "falsy", "raises"):
        manager.create_task(taskid)

    def _action(task):
        if task.taskid == "raises":
            raise RuntimeError("exploded")
        return task.taskid == "ok"

    result = manager.process_tasks(ProcessOptions(action=_action))

    assert (result.total, result.success, result.failure) == (3, 1, 2)
    assert task_row("ok")["status"] == 0
    falsy = task_row("falsy")
    assert (falsy["status"], falsy["attempts"], falsy["sessionid"]) == (1, 1, manager.sessionid)
    raised = task_row("raises")
    assert (raised["error_status"], raised["error_message"]) == ("RuntimeError", "exploded")


def test_process_tasks_can_release_failed_tasks(make_manager, task_row) -> None:
    manager = make_manager()
    manager.create_task("t1")

    manager.process_tasks(ProcessOptions(action=lambda task: False, maintain_ownership=False))

    assert task_row("t1")["sessionid"] is None


def test_process_tasks_delete_mode(make_manager, execute_sql) -> None:
    manager = make_manager()
    manager.create_task("t1")
    manager.create_task("t2")

    result = manager.process_tasks(ProcessOptions(action=lambda task: True, delete=True))

    assert result.total == 2
    assert execute_sql("SELECT COUNT(*) FROM jobs")[0][0] == 0


def test_process_tasks_only_visits_owned_pending_tasks(make_manager) -> None:
    manager = make_manager()
    manager.create_task("mine")
    manager.create_task("unowned", TaskCreate(take_ownership=False))
    seen: list[str] = []

    manager.process_tasks(ProcessOptions(action=lambda task: seen.append(task.taskid) or True))

    assert seen == ["mine"]


def test_process_tasks_touches_session(make_manager, execute_sql) -> None:
    manager = make_manager(session_lifetime=600)
    for index in range(4):
        manager.create_task(f"t{index}")
    execute_sql(
        "UPDATE processing_sessions SET expires = expires - 300 WHERE sessionid = ?",
        (manager.sessionid,),
    )
    lowered = execute_sql(
        "SELECT expires FROM processing_sessions WHERE sessionid = ?",
        (manager.sessionid,),
    )[0][0]

    manager.process_tasks(ProcessOptions(action=lambda task: True, touch_period=2))

    refreshed = execute_sql(
        "SELECT expires FROM processing_sessions WHERE sessionid = ?",
        (manager.sessionid,),
    )[0][0]
    assert refreshed > lowered


def test_process_tasks_with_query_result_passes_row(make_manager, execute_sql) -> None:
    manager = make_manager()
    manager.create_task("t1", TaskCreate(data1="payload"))
    rows = [dict(row) for row in execute_sql("SELECT *, 'extra' AS note FROM jobs")]
    received: list[tuple[str, str]] = []

    def _action(task, row):
        received.append((task.data1, row["note"]))
        return True

    result = manager.process_tasks(ProcessOptions(action=_action, query_result=rows))

    assert result.success == 1
    assert received == [("payload", "extra")]


def test_process_tasks_rejects_foreign_rows_in_query_result(make_manager, execute_sql) -> None:
    manager = make_manager()
    manager.create_task("t1", TaskCreate(take_ownership=False))
    rows = [dict(row) for row in execute_sql("SELECT * FROM jobs")]

    with pytest.raises(StateError, match="not owned by manager"):
        manager.process_tasks(ProcessOptions(action=lambda task, row: True, query_result=rows))


def test_process_options_validation() -> None:
    with pytest.raises(MissingParameter):
        ProcessOptions()
    with pytest.raises(InvalidParameter):
        ProcessOptions(action="not callable")  # type: ignore[arg-type]
    with pytest.raises(InvalidParameter):
        ProcessOptions(action=lambda task: True, touch_period=0)


@pytest.mark.parametrize("row", [{"taskid": "t1"}, ("t1", 0)])
def test_process_tasks_rejects_undecodable_query_rows(make_manager, row: object) -> None:
    manager = make_manager()
    calls: list[object] = []

    with pytest.raises(StateError, match="does not decode into a task"):
        manager.process_tasks(
            ProcessOptions(action=lambda task, row: calls.append(task), query_result=[row]),
        )
    assert calls == []


def test_process_tasks_requires_action_at_call_time(make_manager) -> None:
    manager = make_manager()
    manager.create_task("t1")
    options = ProcessOptions(action=lambda task: True)
    options.action = None

    with pytest.raises(MissingParameter, match="Missing action"):
        manager.process_tasks(options)
