import pytest

from pairchat.errors import StorageError
from pairchat.models import ChatSession, ConnectionDescriptor, Message
from pairchat.storage import SqliteStore


def test_descriptor_single_slot(store) -> None:
    assert store.load_descriptor() is None

    store.save_descriptor(ConnectionDescriptor("s1", "Bob", "hub"))
    store.save_descriptor(ConnectionDescriptor("s2", "Bob", ""))
    assert store.load_descriptor() == ConnectionDescriptor("s2", "Bob", "")

    store.delete_descriptor()
    store.delete_descriptor()
    assert store.load_descriptor() is None


def test_messages_sorted_by_timestamp(store) -> None:
    store.save_message(Message("s1", "Alice", "second", 20))
    store.save_message(Message("s1", "Bob", "first", 10, is_own=True))
    store.save_message(Message("s2", "Carol", "elsewhere", 5))

    messages = store.get_messages("s1")
    assert [m.content for m in messages] == ["first", "second"]
    assert messages[0].is_own is True
    assert messages[1].is_own is False


def test_replayed_hub_entry_is_ignored(store) -> None:
    m = Message("s1", "Alice", "hello", 20, seq=4)
    assert store.save_message(m) > 0
    assert store.save_message(m) == 0
    # Same position in the log, even if the replay looks different.
    assert store.save_message(Message("s1", "Alice", "hello", 21, seq=4)) == 0
    assert store.save_message(Message("s2", "Alice", "hello", 20, seq=4)) > 0

    [stored] = store.get_messages("s1")
    assert stored.seq == 4


def test_identical_local_messages_are_all_kept(store) -> None:
    m = Message("s1", "Alice", "ok", 5_000, is_own=True)
    assert store.save_message(m) > 0
    assert store.save_message(m) > 0
    assert [x.content for x in store.get_messages("s1")] == ["ok", "ok"]
    assert store.get_messages("s1")[0].seq is None


def test_sessions_sorted_by_last_message(store) -> None:
    store.save_chat_session(ChatSession("s1", "Alice", 1, 10))
    store.save_chat_session(ChatSession("s2", "Carol", 2, 5))
    store.update_session_last_message("s2", 50)

    sessions = store.get_chat_sessions()
    assert [s.session_id for s in sessions] == ["s2", "s1"]
    assert store.get_chat_session("s2") == ChatSession("s2", "Carol", 2, 50)
    assert store.get_chat_session("missing") is None


def test_delete_session_removes_history(store) -> None:
    store.save_chat_session(ChatSession("s1", "Alice", 1, 10))
    store.save_message(Message("s1", "Alice", "hello", 20))
    store.delete_chat_session("s1")
    assert store.get_chat_sessions() == []
    assert store.get_messages("s1") == []


def test_uninitialized_store_raises() -> None:
    store = SqliteStore(":memory:")
    with pytest.raises(StorageError):
        store.load_descriptor()
    with pytest.raises(StorageError):
        store.save_message(Message("s1", "Alice", "hello", 20))


def test_file_store_survives_reopen(tmp_path) -> None:
    path = tmp_path / "nested" / "chat.db"
    store = SqliteStore(path)
    store.initialize()
    store.save_descriptor(ConnectionDescriptor("s1", "Bob", ""))
    store.close()

    reopened = SqliteStore(path)
    reopened.initialize()
    assert reopened.load_descriptor() == ConnectionDescriptor("s1", "Bob", "")
    reopened.close()


def test_unopenable_database_raises(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x")
    store = SqliteStore(blocker / "chat.db")
    with pytest.raises(StorageError):
        store.initialize()
