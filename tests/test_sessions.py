from __future__ import annotations

from pathlib import Path

import allure
import pytest

from lease_queue.errors import InvalidParameter, MissingParameter, ObjectDoesNotExist
from lease_queue.queue.sessions import SessionStore
from lease_queue.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Processing Sessions"),
]


@pytest.fixture()
def store(db_path: Path):
    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    yield SessionStore(engine)
    engine.dispose()


def test_create_and_load_session(store: SessionStore) -> None:
    created = store.create(userid=5, lifetime=120)

    loaded = store.load(created.sessionid)

    assert loaded == created
    assert loaded.expires == loaded.created + 120
    assert store.is_live(created.sessionid)


@pytest.mark.parametrize(
    ("userid", "lifetime", "error"),
    [(None, 10, MissingParameter), (0, 10, InvalidParameter), (1, -5, InvalidParameter)],
)
def test_create_validates_arguments(
    store: SessionStore,
    userid: object,
    lifetime: object,
    error: type,
) -> None:
    with pytest.raises(error):
        store.create(userid=userid, lifetime=lifetime)  # type: ignore[arg-type]


def test_expired_session_is_not_loaded_or_resurrected(store: SessionStore, expire_session) -> None:
    session = store.create(userid=1, lifetime=60)
    expire_session(session.sessionid)

    assert not store.is_live(session.sessionid)
    with pytest.raises(ObjectDoesNotExist):
        store.load(session.sessionid)
    with pytest.raises(ObjectDoesNotExist):
        store.touch(session)


def test_touch_extends_expiration(store: SessionStore, execute_sql) -> None:
    session = store.create(userid=1, lifetime=600)
    execute_sql(
        "UPDATE processing_sessions SET expires = expires - 300 WHERE sessionid = ?",
        (session.sessionid,),
    )

    touched = store.touch(session)

    assert touched.expires >= session.created + 600
    assert store.load(session.sessionid).expires == touched.expires


def test_load_can_touch(store: SessionStore, execute_sql) -> None:
    session = store.create(userid=1, lifetime=600)
    execute_sql(
        "UPDATE processing_sessions SET expires = expires - 300 WHERE sessionid = ?",
        (session.sessionid,),
    )

    loaded = store.load(session.sessionid, touch=True)

    assert loaded.expires >= session.created + 600
    assert not loaded.expired()
    assert loaded.expired(now=loaded.expires + 1)


def test_delete_and_purge(store: SessionStore, expire_session) -> None:
    kept = store.create(userid=1, lifetime=60)
    stale = store.create(userid=1, lifetime=60)
    gone = store.create(userid=1, lifetime=60)
    expire_session(stale.sessionid)

    assert store.delete(gone.sessionid)
    assert not store.delete(gone.sessionid)
    assert store.purge_expired() == 1
    assert store.is_live(kept.sessionid)
    with pytest.raises(ObjectDoesNotExist):
        store.load(gone.sessionid)
