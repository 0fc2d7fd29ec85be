import threading

import pytest

from habla.storage.errors import ConstraintViolation
from habla.storage.memory import MemoryStore
from habla.storage.models import LogRecord, ProfileUpdate


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("ana", "ana@example.com", "hash", first_name="Ana")


def test_unique_email_and_username_are_case_insensitive(store, user):
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("otra", "ANA@example.com", "hash")
    assert exc_info.value.field == "email"

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("ANA", "otra@example.com", "hash")
    assert exc_info.value.field == "username"


def test_returned_users_are_copies(store, user):
    user.first_name = "Mutated"
    assert store.get_user(user.id).first_name == "Ana"


def test_update_writes_only_listed_fields(store, user):
    update = ProfileUpdate(last_name="García", fields_set=frozenset({"last_name"}))

    updated = store.update_user(user.id, update)

    assert updated.first_name == "Ana"
    assert updated.last_name == "García"
    assert updated.updated_at >= user.updated_at


def test_update_can_clear_a_field(store, user):
    update = ProfileUpdate(first_name=None, fields_set=frozenset({"first_name"}))
    assert store.update_user(user.id, update).first_name is None


def test_update_rejects_taken_email(store, user):
    other = store.create_user("luis", "luis@example.com", "hash")
    update = ProfileUpdate(email="ana@example.com", fields_set=frozenset({"email"}))

    with pytest.raises(ConstraintViolation):
        store.update_user(other.id, update)


def test_inactive_user_is_not_updated(store, user):
    store.set_user_active(user.id, False)
    update = ProfileUpdate(first_name="Ana María", fields_set=frozenset({"first_name"}))

    assert store.update_user(user.id, update) is None
    assert store.set_user_active("missing", False) is False


def test_conversation_requires_existing_user(store):
    with pytest.raises(ConstraintViolation):
        store.create_conversation("no-such-user", "Viajes")


def test_message_sequence_is_dense_under_concurrency(store, user):
    conversation = store.create_conversation(user.id, "Viajes")

    def _writer(n):
        for i in range(25):
            store.append_message(conversation.id, "user", f"{n}-{i}")

    threads = [threading.Thread(target=_writer, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    messages = store.list_messages(conversation.id)
    assert [m.seq for m in messages] == list(range(100))


def test_append_to_missing_conversation(store):
    with pytest.raises(ConstraintViolation):
        store.append_message("missing", "user", "hola")


def test_list_orders_by_last_activity(store, user):
    older = store.create_conversation(user.id, "Uno")
    newer = store.create_conversation(user.id, "Dos")
    store.append_message(older.id, "user", "hola")

    listed = store.list_conversations(user.id)

    assert [c.id for c in listed] == [older.id, newer.id]
    assert store.message_summary(older.id) == (1, "hola")
    assert store.message_summary(newer.id) == (0, None)


def test_logs_get_increasing_ids_and_filter_by_level(store):
    store.append_log(LogRecord(level="info", message="a"))
    store.append_log(LogRecord(level="error", message="b"))
    store.append_log(LogRecord(level="info", message="c"))

    assert [r.id for r in store.list_logs()] == [1, 2, 3]
    assert [r.message for r in store.list_logs(level="info")] == ["a", "c"]
    assert [r.message for r in store.list_logs(limit=1)] == ["c"]
