"""ORM tables for processing sessions and per-queue task tables."""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

SESSIONS_TABLE = "processing_sessions"

INTERNAL_TABLES = frozenset({SESSIONS_TABLE, "alembic_version"})

# Columns every logical queue table carries; used to tell queues from other tables.
QUEUE_COLUMNS = frozenset(
    {
        "id",
        "taskid",
        "created",
        "expires",
        "completed",
        "attempts",
        "max_attempts",
        "status",
        "sessionid",
        "parameters",
        "data1",
        "data2",
        "data3",
        "error_status",
        "error_message",
    },
)

QUEUE_METADATA = MetaData()


class ProcessingSessionRow(SQLModel, table=True):
    __tablename__ = SESSIONS_TABLE  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    sessionid: str = Field(sa_column=Column(String, nullable=False, unique=True, index=True))
    userid: int
    lifetime: int
    expires: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    created: int = Field(sa_column=Column(BigInteger, nullable=False))


def queue_table(name: str) -> Table:
    """Return the Core table describing the logical queue ``name``."""

    existing = QUEUE_METADATA.tables.get(name)
    if existing is not None:
        return existing
    return Table(
        name,
        QUEUE_METADATA,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("taskid", String, nullable=False),
        Column("created", BigInteger, nullable=False),
        Column("expires", BigInteger, nullable=False),
        Column("completed", BigInteger, nullable=True),
        Column("attempts", Integer, nullable=False, server_default="0"),
        Column("max_attempts", Integer, nullable=True),
        Column("status", Integer, nullable=False),
        Column("sessionid", String, nullable=True),
        Column("parameters", Text, nullable=True),
        Column("data1", String, nullable=True),
        Column("data2", String, nullable=True),
        Column("data3", String, nullable=True),
        Column("error_status", String, nullable=True),
        Column("error_message", Text, nullable=True),
        UniqueConstraint("taskid", name=f"uq_{name}_taskid"),
        Index(f"idx_{name}_sessionid", "sessionid"),
        Index(f"idx_{name}_status_created", "status", "created"),
        sqlite_autoincrement=True,
    )
