"""Runtime configuration for queue managers and the pruner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class SessionSettings:
    """Defaults for processing sessions started by a manager."""

    userid: int = 1
    lifetime_seconds: int = 3_600


@dataclass(slots=True)
class ProcessingSettings:
    """Batch-processing defaults."""

    touch_period: int | None = None


@dataclass(slots=True)
class PruneSettings:
    """Retention defaults used by the ``prune`` command."""

    queues: str | None = None
    status: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".lease_queue.db")
    busy_timeout_ms: int = 5_000
    session: SessionSettings = field(default_factory=SessionSettings)
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    prune: PruneSettings = field(default_factory=PruneSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        touch_period = os.getenv("LEASE_QUEUE_TOUCH_PERIOD", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("LEASE_QUEUE_DB_PATH", ".lease_queue.db")),
            busy_timeout_ms=int(os.getenv("LEASE_QUEUE_BUSY_TIMEOUT_MS", "5000")),
            session=SessionSettings(
                userid=int(os.getenv("LEASE_QUEUE_SESSION_USERID", "1")),
                lifetime_seconds=int(os.getenv("LEASE_QUEUE_SESSION_LIFETIME", "3600")),
            ),
            processing=ProcessingSettings(
                touch_period=int(touch_period) if touch_period else None,
            ),
            prune=PruneSettings(
                queues=os.getenv("LEASE_QUEUE_PRUNE_QUEUES") or None,
                status=os.getenv("LEASE_QUEUE_PRUNE_STATUS") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if numeric settings are out of range."""

        if self.busy_timeout_ms <= 0:
            raise ValueError("LEASE_QUEUE_BUSY_TIMEOUT_MS must be > 0.")
        if self.session.userid <= 0:
            raise ValueError("LEASE_QUEUE_SESSION_USERID must be a positive integer.")
        if self.session.lifetime_seconds <= 0:
            raise ValueError("LEASE_QUEUE_SESSION_LIFETIME must be > 0.")
        if self.processing.touch_period is not None and self.processing.touch_period <= 0:
            raise ValueError("LEASE_QUEUE_TOUCH_PERIOD must be > 0 when set.")
