"""Processing sessions: the leases that own claimed tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from lease_queue.errors import ObjectDoesNotExist
from lease_queue.queue.validation import check_int, check_str
from lease_queue.storage.common import unix_now
from lease_queue.storage.sqlmodel_models import ProcessingSessionRow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessingSession:
    """Readable view of a processing session."""

    sessionid: str
    userid: int
    lifetime: int
    expires: int
    created: int

    def expired(self, now: int | None = None) -> bool:
        return self.expires < (unix_now() if now is None else now)


class SessionStore:
    """Create, load, refresh, and delete processing sessions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, *, userid: int, lifetime: int) -> ProcessingSession:
        check_int("userid", userid, minimum=1, required=True)
        check_int("lifetime", lifetime, minimum=1, required=True)
        now = unix_now()
        with Session(self.engine) as session:
            row = ProcessingSessionRow(
                sessionid=uuid4().hex,
                userid=userid,
                lifetime=lifetime,
                expires=now + lifetime,
                created=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("Started processing session %s (userid=%d)", row.sessionid, userid)
            return _to_view(row)

    def load(self, sessionid: str, *, touch: bool = False) -> ProcessingSession:
        """Return a live session; deleted and expired sessions do not exist."""

        check_str("sessionid", sessionid, required=True)
        now = unix_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessingSessionRow).where(
                    ProcessingSessionRow.sessionid == sessionid,
                    col(ProcessingSessionRow.expires) >= now,
                ),
            ).one_or_none()
            if row is None:
                raise ObjectDoesNotExist(f"No such processing session: {sessionid}")
            if touch:
                row.expires = now + row.lifetime
                session.add(row)
                session.commit()
                session.refresh(row)
            return _to_view(row)

    def is_live(self, sessionid: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessingSessionRow.id).where(
                    ProcessingSessionRow.sessionid == sessionid,
                    col(ProcessingSessionRow.expires) >= unix_now(),
                ),
            ).first()
        return row is not None

    def touch(self, current: ProcessingSession) -> ProcessingSession:
        """Extend the session lease by its lifetime, starting now."""

        now = unix_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProcessingSessionRow)
                .where(
                    col(ProcessingSessionRow.sessionid) == current.sessionid,
                    col(ProcessingSessionRow.expires) >= now,
                )
                .values(expires=now + current.lifetime),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ObjectDoesNotExist(
                    f"Processing session {current.sessionid} expired before it was touched",
                )
            session.commit()
        current.expires = now + current.lifetime
        return current

    def delete(self, sessionid: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ProcessingSessionRow).where(
                    col(ProcessingSessionRow.sessionid) == sessionid,
                ),
            )
            session.commit()
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Delete expired sessions; returns the number removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ProcessingSessionRow).where(
                    col(ProcessingSessionRow.expires) < unix_now(),
                ),
            )
            session.commit()
        if result.rowcount:
            logger.debug("Purged %d expired processing sessions", result.rowcount)
        return result.rowcount


def _to_view(row: ProcessingSessionRow) -> ProcessingSession:
    return ProcessingSession(
        sessionid=row.sessionid,
        userid=row.userid,
        lifetime=row.lifetime,
        expires=row.expires,
        created=row.created,
    )
