import pytest

from pairchat.logs import SessionLog, SessionLogStore


def test_sequence_numbers_increase() -> None:
    log = SessionLog()
    entries = [log.append("Alice", f"m{i}", 100 + i) for i in range(3)]
    assert [e.seq for e in entries] == [1, 2, 3]
    assert [e.content for e in log.entries_since(1)] == ["m1", "m2"]
    assert log.entries_since(3) == []


def test_log_is_bounded_but_keeps_counting() -> None:
    log = SessionLog(max_entries=2)
    for i in range(5):
        log.append("Alice", f"m{i}", i)
    assert [e.seq for e in log.entries] == [4, 5]
    assert log.next_seq == 6


def test_subscribe_once_per_handle() -> None:
    logs = SessionLogStore()
    handle = object()
    assert logs.subscribe("s1", handle) is True
    assert logs.subscribe("s1", handle) is False
    assert logs.subscribers("s1") == [handle]

    assert logs.unsubscribe("s1", handle) is True
    assert logs.unsubscribe("s1", handle) is False
    assert logs.subscribers("s1") == []


def test_drop_handle_leaves_other_subscribers() -> None:
    logs = SessionLogStore()
    a, b = object(), object()
    logs.subscribe("s1", a)
    logs.subscribe("s2", a)
    logs.subscribe("s1", b)

    assert sorted(logs.drop_handle(a)) == ["s1", "s2"]
    assert logs.subscribers("s1") == [b]
    assert logs.get_stats()["subscriptions"] == 1


def test_prune_idle_skips_subscribed_sessions() -> None:
    logs = SessionLogStore()
    logs.append("idle", "Alice", "hi", 1)
    logs.subscribe("busy", object())

    assert logs.prune_idle(60.0, now=logs.get("idle").last_used + 30) == []
    pruned = logs.prune_idle(60.0, now=logs.get("idle").last_used + 120)
    assert pruned == ["idle"]
    assert logs.get("busy") is not None
    assert logs.prune_idle(0) == []


def test_session_limit() -> None:
    logs = SessionLogStore(max_sessions=1)
    logs.append("s1", "Alice", "hi", 1)
    with pytest.raises(OverflowError):
        logs.append("s2", "Alice", "hi", 1)
