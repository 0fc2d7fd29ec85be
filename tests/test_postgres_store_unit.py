import uuid
from datetime import datetime, timezone

import pytest
from psycopg import errors

from habla.logging import get_logger
from habla.storage.errors import ConstraintViolation
from habla.storage.models import LogRecord, ProfileUpdate
from habla.storage.postgres import SCHEMA_STATEMENTS, PostgresStore, _as_uuid

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=1):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.responses:
            return self.responses.pop(0)
        return FakeCursor()


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))

    def connection(self):
        return self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "username": "ana",
        "email": "ana@example.com",
        "password_hash": "hash",
        "first_name": "Ana",
        "last_name": None,
        "language_level": "beginner",
        "total_points": 0,
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
        "last_login": None,
    }
    row.update(overrides)
    return row


def test_schema_declares_case_insensitive_unique_indexes():
    joined = "\n".join(SCHEMA_STATEMENTS)
    assert "ON app_user (lower(email))" in joined
    assert "ON app_user (lower(username))" in joined
    assert "UNIQUE (conversation_id, seq)" in joined


def test_malformed_ids_never_reach_the_database():
    store = _store(DummyPool())

    assert _as_uuid("not-a-uuid") is None
    assert store.get_user("not-a-uuid") is None
    assert store.get_conversation("1; DROP TABLE conversation") is None


def test_user_row_mapping():
    row = _user_row()
    store = _store(FakePool(FakeCursor(row=row)))

    user = store.get_user(str(row["id"]))

    assert user.id == str(row["id"])
    assert user.email == "ana@example.com"
    assert user.is_active is True


def test_update_builds_assignments_from_known_columns():
    pool = FakePool(FakeCursor(row=_user_row(last_name="García")))
    store = _store(pool)
    update = ProfileUpdate(last_name="García", fields_set=frozenset({"last_name"}))

    user = store.update_user(str(uuid.uuid4()), update)

    sql, params = pool.conn.executed[0]
    assert "SET last_name = %s, updated_at = now()" in sql
    assert params[0] == "García"
    assert user.last_name == "García"


def test_unique_violation_becomes_constraint_violation():
    class RaisingConnection(FakeConnection):
        def execute(self, sql, params=None):
            raise errors.UniqueViolation("duplicate key")

    pool = FakePool()
    pool.conn = RaisingConnection([])
    store = _store(pool)

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("ana", "ana@example.com", "hash")
    assert exc_info.value.field in ("email", "username")


def test_append_message_allocates_next_seq_under_row_lock():
    conversation_id = str(uuid.uuid4())
    message_row = {
        "id": uuid.uuid4(),
        "conversation_id": uuid.UUID(conversation_id),
        "seq": 3,
        "role": "user",
        "content": "hola",
        "message_type": "text",
        "audio_url": None,
        "created_at": NOW,
    }
    pool = FakePool(
        FakeCursor(row={"id": conversation_id}),
        FakeCursor(row={"next_seq": 3}),
        FakeCursor(row=message_row),
    )
    store = _store(pool)

    message = store.append_message(conversation_id, "user", "hola")

    statements = [sql for sql, _ in pool.conn.executed]
    assert statements[0].endswith("FOR UPDATE")
    assert "COALESCE(MAX(seq) + 1, 0)" in statements[1]
    assert pool.conn.executed[2][1][2] == 3
    assert statements[3].startswith("UPDATE conversation SET updated_at")
    assert message.seq == 3
    assert message.conversation_id == conversation_id


def test_append_message_to_missing_conversation():
    store = _store(FakePool(FakeCursor(row=None)))

    with pytest.raises(ConstraintViolation):
        store.append_message(str(uuid.uuid4()), "user", "hola")


def test_append_log_serializes_metadata():
    log_row = {
        "id": 7,
        "level": "http",
        "message": "GET /health - 200",
        "method": "GET",
        "path": "/health",
        "status_code": 200,
        "response_time_ms": 3,
        "ip": "127.0.0.1",
        "user_agent": None,
        "user_id": None,
        "error": None,
        "stack": None,
        "metadata": {"query": {}},
        "created_at": NOW,
    }
    pool = FakePool(FakeCursor(row=log_row))
    store = _store(pool)

    stored = store.append_log(
        LogRecord(level="http", message="GET /health - 200", metadata={"query": {}})
    )

    _, params = pool.conn.executed[0]
    assert params[11] == '{"query": {}}'
    assert stored.id == 7
    assert stored.user_id is None
