"""Create the processing session table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "processing_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sessionid", sa.String(), nullable=False),
        sa.Column("userid", sa.Integer(), nullable=False),
        sa.Column("lifetime", sa.Integer(), nullable=False),
        sa.Column("expires", sa.BigInteger(), nullable=False),
        sa.Column("created", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_processing_sessions_sessionid",
        "processing_sessions",
        ["sessionid"],
        unique=True,
    )
    op.create_index(
        "ix_processing_sessions_expires",
        "processing_sessions",
        ["expires"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_processing_sessions_expires", table_name="processing_sessions")
    op.drop_index("ix_processing_sessions_sessionid", table_name="processing_sessions")
    op.drop_table("processing_sessions")
