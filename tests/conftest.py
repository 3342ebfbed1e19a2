"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from lease_queue.config import Settings
from lease_queue.queue.manager import Manager
from lease_queue.queue.models import ManagerConfig
from lease_queue.storage.common import build_sqlite_engine
from lease_queue.storage.database import create_queue, init_schema

QUEUE = "jobs"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Initialized database holding one empty queue named ``jobs``."""

    path = tmp_path / "queue.db"
    init_schema(path)
    engine = build_sqlite_engine(db_path=path, busy_timeout_ms=5_000)
    try:
        create_queue(engine, QUEUE)
    finally:
        engine.dispose()
    return path


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(db_path=db_path)


@pytest.fixture()
def make_manager(db_path: Path, settings: Settings) -> Iterator[Callable[..., Manager]]:
    """Factory for managers on the ``jobs`` queue; all are closed at teardown."""

    managers: list[Manager] = []

    def _make(**overrides: Any) -> Manager:
        options: dict[str, Any] = {
            "queue": QUEUE,
            "tool": "tests",
            "lifetime": 3_600,
            "max_attempts": 3,
        }
        options.update(overrides)
        manager = Manager(db_path, ManagerConfig(**options), settings=settings)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.close()


@pytest.fixture()
def execute_sql(db_path: Path) -> Callable[..., list[sqlite3.Row]]:
    """Run raw SQL against the test database, bypassing the queue API."""

    def _execute(sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        connection = sqlite3.connect(db_path)
        connection.row_factory = sqlite3.Row
        try:
            rows = connection.execute(sql, params).fetchall()
            connection.commit()
        finally:
            connection.close()
        return rows

    return _execute


@pytest.fixture()
def expire_session(execute_sql: Callable[..., list[sqlite3.Row]]) -> Callable[[str], None]:
    def _expire(sessionid: str) -> None:
        execute_sql(
            "UPDATE processing_sessions SET expires = expires - 100000 WHERE sessionid = ?",
            (sessionid,),
        )

    return _expire


@pytest.fixture()
def task_row(execute_sql: Callable[..., list[sqlite3.Row]]) -> Callable[[str], dict[str, Any]]:
    def _row(taskid: str) -> dict[str, Any]:
        rows = execute_sql(f"SELECT * FROM {QUEUE} WHERE taskid = ?", (taskid,))
        assert len(rows) == 1
        return dict(rows[0])

    return _row
