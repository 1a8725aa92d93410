import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from delivery_locations.core.config import settings
from delivery_locations.core.db_retry import (
    backoff_delay,
    is_transient_db_error,
    with_db_retry,
)


class DummyOrig(Exception):
    def __init__(self, code: int, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.args = (code, message)


class DummySession:
    def __init__(self):
        self.rollback_calls = 0

    async def rollback(self):
        self.rollback_calls += 1


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "DB_RETRY_ATTEMPTS", 2)
    monkeypatch.setattr(settings, "DB_RETRY_BASE_DELAY", 0.0)
    monkeypatch.setattr(settings, "DB_RETRY_JITTER", 0.0)


@pytest.mark.anyio
async def test_db_retry_respects_config(fast_retries):
    session = DummySession()
    calls = {"count": 0}

    async def flaky_operation():
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("stmt", {}, DummyOrig(1213, "deadlock"))
        return "ok"

    result = await with_db_retry(session, flaky_operation)

    assert result == "ok"
    assert calls["count"] == 2
    assert session.rollback_calls == 1


@pytest.mark.anyio
async def test_serialization_failure_sqlstate_is_retried(fast_retries):
    session = DummySession()
    calls = {"count": 0}

    async def serialization_failure():
        calls["count"] += 1
        raise OperationalError("stmt", {}, DummyOrig(0, "could not serialize", sqlstate="40001"))

    with pytest.raises(OperationalError):
        await with_db_retry(session, serialization_failure)

    assert calls["count"] == 2


@pytest.mark.anyio
async def test_non_transient_error_not_retried(fast_retries):
    session = DummySession()
    calls = {"count": 0}

    async def duplicate_key():
        calls["count"] += 1
        raise IntegrityError("stmt", {}, DummyOrig(1062, "Duplicate entry 'alwaseet-7'"))

    with pytest.raises(IntegrityError):
        await with_db_retry(session, duplicate_key)

    assert calls["count"] == 1
    assert session.rollback_calls == 0


def test_transient_error_classification():
    assert is_transient_db_error(OperationalError("stmt", {}, DummyOrig(1205, "Lock wait timeout exceeded")))
    assert is_transient_db_error(OperationalError("stmt", {}, DummyOrig(0, "database is locked")))
    assert not is_transient_db_error(IntegrityError("stmt", {}, DummyOrig(1062, "Duplicate entry")))
    assert not is_transient_db_error(ValueError("deadlock"))


def test_backoff_doubles_without_jitter():
    assert [backoff_delay(n, 0.1, 0.0) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])
