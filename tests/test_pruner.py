from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from lease_queue.config import PruneSettings, Settings
from lease_queue.errors import InvalidParameter, MissingParameter
from lease_queue.queue.models import PruneOptions, TaskCreate, TaskStatus
from lease_queue.queue.pruner import Pruner, parse_prune_rules, parse_status_list
from lease_queue.storage.common import build_sqlite_engine
from lease_queue.storage.database import create_queue

pytestmark = [
    allure.epic("Retention"),
    allure.feature("Pruner"),
]

DAY = 24 * 3600


@pytest.fixture()
def queues(db_path: Path, execute_sql) -> Path:
    """Adds queues ``mail_out`` and ``mail_in`` plus an unrelated ``audit`` table."""

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    try:
        create_queue(engine, "mail_out")
        create_queue(engine, "mail_in")
    finally:
        engine.dispose()
    execute_sql("CREATE TABLE mail_audit (id INTEGER PRIMARY KEY, created INTEGER)")
    return db_path


def _age_rows(execute_sql, table: str, days: int) -> None:
    execute_sql(f"UPDATE {table} SET created = created - ?", (days * DAY,))


def test_parse_prune_rules_accepts_whitespace_and_order() -> None:
    rules = parse_prune_rules(" mail_*:7 ,  jobs:0,q?x:30 ")

    assert [(rule.pattern.text, rule.age_days) for rule in rules] == [
        ("mail_*", 7),
        ("jobs", 0),
        ("q?x", 30),
    ]


@pytest.mark.parametrize(
    "spec",
    ["jobs", "jobs:", ":5", "jobs:07", "jobs:-1", "jobs:1.5", "jo-bs:3", "a**:1", "jöbs:1", ""],
)
def test_parse_prune_rules_rejects_malformed_specs(spec: str) -> None:
    with pytest.raises(InvalidParameter):
        parse_prune_rules(spec)


def test_parse_status_list() -> None:
    assert parse_status_list(" SUCCESS , FAILURE,SUCCESS") == (
        TaskStatus.SUCCESS,
        TaskStatus.FAILURE,
    )
    with pytest.raises(InvalidParameter, match="Invalid status list"):
        parse_status_list("DONE")


def test_list_mode_maps_queues_to_first_matching_age(queues: Path, settings: Settings) -> None:
    result = Pruner(queues, settings=settings).execute(
        PruneOptions(queues="mail_in:3,mail_*:10,jobs:0", mode="list"),
    )

    assert result.queues == {"jobs": 0, "mail_in": 3, "mail_out": 10}
    assert result.deleted == {}


def test_execute_deletes_rows_older_than_age(
    queues: Path,
    settings: Settings,
    make_manager,
    execute_sql,
) -> None:
    manager = make_manager()
    manager.create_task("old")
    _age_rows(execute_sql, "jobs", 10)
    manager.create_task("new")

    result = Pruner(queues, settings=settings).execute(PruneOptions(queues="jobs:5"))

    assert result.deleted == {"jobs": 1}
    assert [row["taskid"] for row in execute_sql("SELECT taskid FROM jobs")] == ["new"]


def test_age_zero_deletes_everything_subject_to_status(
    queues: Path,
    settings: Settings,
    make_manager,
    execute_sql,
) -> None:
    manager = make_manager()
    manager.create_task("done").update(TaskStatus.SUCCESS)
    manager.create_task("failed").update(TaskStatus.FAILURE)
    manager.create_task("waiting")

    result = Pruner(queues, settings=settings).execute(
        PruneOptions(queues="jobs:0", status="SUCCESS,FAILURE"),
    )

    assert result.deleted == {"jobs": 2}
    assert [row["taskid"] for row in execute_sql("SELECT taskid FROM jobs")] == ["waiting"]


def test_unmatched_patterns_are_logged(
    queues: Path,
    settings: Settings,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.WARNING, logger="lease_queue"):
        result = Pruner(queues, settings=settings).execute(
            PruneOptions(queues="mail_*:1,archive*:1"),
        )

    assert set(result.deleted) == {"mail_in", "mail_out"}
    assert "No queues match pattern 'archive*'" in caplog.text


def test_no_matching_queues_is_logged(
    queues: Path,
    settings: Settings,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.WARNING, logger="lease_queue"):
        result = Pruner(queues, settings=settings).execute(PruneOptions(queues="nothing*:1"))

    assert result.queues == {}
    assert "No matching queues" in caplog.text


def test_failing_queue_does_not_stop_others(
    queues: Path,
    settings: Settings,
    make_manager,
    execute_sql,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_manager().create_task("t1", TaskCreate(take_ownership=False))
    execute_sql(
        "CREATE TRIGGER mail_in_locked BEFORE DELETE ON mail_in "
        "BEGIN SELECT RAISE(ABORT, 'retention locked'); END",
    )
    execute_sql(
        "INSERT INTO mail_in (taskid, created, expires, attempts, status) VALUES ('m', 0, 0, 0, 1)",
    )

    with caplog.at_level(logging.ERROR, logger="lease_queue"):
        result = Pruner(queues, settings=settings).execute(PruneOptions(queues="*:0"))

    assert result.failed == ["mail_in"]
    assert result.deleted == {"jobs": 1, "mail_out": 0}
    assert "Failed deleting tasks from mail_in" in caplog.text


def test_options_fall_back_to_settings(queues: Path, db_path: Path) -> None:
    settings = Settings(db_path=db_path, prune=PruneSettings(queues="jobs:1", status="PENDING"))

    result = Pruner(queues, settings=settings).execute(PruneOptions(mode="list"))

    assert result.queues == {"jobs": 1}


def test_options_validation(queues: Path, settings: Settings) -> None:
    pruner = Pruner(queues, settings=settings)

    with pytest.raises(MissingParameter):
        pruner.execute(PruneOptions())
    with pytest.raises(InvalidParameter, match="Unsupported mode"):
        pruner.execute(PruneOptions(queues="jobs:1", mode="dry-run"))
    with pytest.raises(InvalidParameter, match="ASCII"):
        pruner.execute(PruneOptions(queues="jobs:1,jöbs:2"))


@pytest.mark.parametrize(
    ("options", "message"),
    [
        (PruneOptions(queues="jobs:0", mode=""), "Unsupported mode"),
        (PruneOptions(queues="jobs:0", status=""), "Invalid status list"),
        (PruneOptions(queues=""), "Invalid maximum age specification"),
    ],
)
def test_empty_options_are_rejected_not_defaulted(
    queues: Path,
    db_path: Path,
    make_manager,
    execute_sql,
    options: PruneOptions,
    message: str,
) -> None:
    make_manager().create_task("waiting")
    settings = Settings(db_path=db_path, prune=PruneSettings(queues="jobs:0"))

    with pytest.raises(InvalidParameter, match=message):
        Pruner(queues, settings=settings).execute(options)
    assert execute_sql("SELECT COUNT(*) FROM jobs")[0][0] == 1
