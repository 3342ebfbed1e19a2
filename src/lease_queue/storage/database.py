"""Schema bootstrap and queue-table discovery."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from lease_queue.storage.alembic_runner import upgrade_head
from lease_queue.storage.sqlmodel_models import INTERNAL_TABLES, QUEUE_COLUMNS, queue_table

logger = logging.getLogger(__name__)


def init_schema(db_path: Path) -> None:
    """Run schema migrations for the shared session table."""

    upgrade_head(db_path)


def create_queue(engine: Engine, name: str) -> bool:
    """Create the table backing queue ``name``; return False if it already existed."""

    if queue_exists(engine, name):
        return False
    queue_table(name).create(engine, checkfirst=True)
    logger.info("Created queue table %s", name)
    return True


def queue_exists(engine: Engine, name: str) -> bool:
    """Check whether ``name`` is a table shaped like a logical queue."""

    inspector = inspect(engine)
    if not inspector.has_table(name):
        return False
    columns = {column["name"] for column in inspector.get_columns(name)}
    return QUEUE_COLUMNS <= columns


def list_queue_tables(engine: Engine) -> list[str]:
    """Return the names of all logical queue tables, sorted."""

    inspector = inspect(engine)
    names: list[str] = []
    for table_name in sorted(inspector.get_table_names()):
        if table_name in INTERNAL_TABLES:
            continue
        columns = {column["name"] for column in inspector.get_columns(table_name)}
        if QUEUE_COLUMNS <= columns:
            names.append(table_name)
    return names
