import pytest

from pairchat.errors import TransportError
from pairchat.models import Message
from pairchat.transport import LocalTransport, RemotePubSubTransport, select_transport

from conftest import FakeBackend


def _msg(content: str, session: str = "s1", sender: str = "Bob") -> Message:
    return Message(session_id=session, sender=sender, content=content, timestamp_ms=1, is_own=True)


def test_local_delivers_in_call_order() -> None:
    transport = LocalTransport()
    seen: list[str] = []
    assert transport.activate("s1", lambda m: seen.append(m.content))

    for i in range(4):
        assert transport.publish(_msg(f"m{i}"))
    assert seen == ["m0", "m1", "m2", "m3"]


def test_local_publish_requires_activation() -> None:
    transport = LocalTransport()
    with pytest.raises(TransportError):
        transport.publish(_msg("hi"))

    transport.activate("s1", lambda m: None)
    transport.deactivate()
    transport.deactivate()
    with pytest.raises(TransportError):
        transport.publish(_msg("hi"))


def test_local_rejects_foreign_session() -> None:
    transport = LocalTransport()
    transport.activate("s1", lambda m: None)
    with pytest.raises(TransportError):
        transport.publish(_msg("hi", session="other"))


def test_remote_publish_comes_back_through_subscription(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend, "hub")
    seen: list[Message] = []
    assert transport.activate("s1", seen.append)

    assert transport.publish(_msg("hello"))
    assert [m.content for m in seen] == ["hello"]
    assert backend.connect_calls == ["hub"]


def test_remote_subscribes_once_per_session(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend)
    seen: list[Message] = []
    assert transport.activate("s1", seen.append)
    assert transport.activate("s1", seen.append)

    assert backend.subscribe_calls == [("s1", 0)]
    transport.publish(_msg("once"))
    assert len(seen) == 1


def test_remote_drops_duplicate_entries(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend)
    seen: list[str] = []
    transport.activate("s1", lambda m: seen.append(m.content))

    transport.publish(_msg("a"))
    transport.publish(_msg("b"))
    backend.redeliver("s1", 1)
    backend.redeliver("s1", 2)
    assert seen == ["a", "b"]


def test_remote_replays_existing_log_in_order(backend: FakeBackend) -> None:
    for content in ("m1", "m2", "m3"):
        backend.append("s1", "Alice", content)

    transport = RemotePubSubTransport(backend)
    seen: list[str] = []
    transport.activate("s1", lambda m: seen.append(m.content))
    transport.publish(_msg("m4"))
    assert seen == ["m1", "m2", "m3", "m4"]


def test_remote_switching_session_unsubscribes_previous(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend)
    seen: list[str] = []
    transport.activate("s1", lambda m: seen.append(m.session_id))
    transport.activate("s2", lambda m: seen.append(m.session_id))

    backend.append("s1", "Alice", "stale")
    backend.append("s2", "Alice", "fresh")
    assert seen == ["s2"]
    assert backend.callbacks["s1"] == []


def test_remote_unreachable_backend_fails_activation() -> None:
    transport = RemotePubSubTransport(FakeBackend(reachable=False))
    assert transport.activate("s1", lambda m: None) is False
    assert transport.session_id is None
    with pytest.raises(TransportError):
        transport.publish(_msg("hi"))


def test_remote_deactivate_is_idempotent(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend)
    seen: list[str] = []
    transport.activate("s1", lambda m: seen.append(m.content))
    transport.deactivate()
    transport.deactivate()

    backend.append("s1", "Alice", "after")
    assert seen == []


def test_select_transport_falls_back_to_local() -> None:
    assert isinstance(select_transport(None), LocalTransport)
    assert isinstance(select_transport(FakeBackend(available=False)), LocalTransport)

    remote = select_transport(FakeBackend(), "hub")
    assert isinstance(remote, RemotePubSubTransport)
    assert remote.endpoint == "hub"
    assert remote.delivers_locally is False
    assert LocalTransport.delivers_locally is True


def test_select_transport_survives_broken_availability_check() -> None:
    class Broken(FakeBackend):
        def is_available(self, endpoint: str = "") -> bool:
            raise OSError("path lookup failed")

    assert isinstance(select_transport(Broken()), LocalTransport)


def test_remote_refused_subscription_fails_activation() -> None:
    transport = RemotePubSubTransport(FakeBackend(refuse_subscribe=True))
    assert transport.activate("s1", lambda m: None) is False
    assert transport.session_id is None
    with pytest.raises(TransportError):
        transport.publish(_msg("hi"))


def test_remote_entries_carry_log_position(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend)
    seen: list[Message] = []
    transport.activate("s1", seen.append)
    transport.publish(_msg("a"))
    transport.publish(_msg("b"))
    assert [m.seq for m in seen] == [1, 2]


def test_remote_link_loss_reaches_owner(backend: FakeBackend) -> None:
    transport = RemotePubSubTransport(backend)
    lost: list[str] = []
    transport.on_lost = lambda: lost.append("lost")
    transport.activate("s1", lambda m: None)

    backend.drop_link()
    assert lost == ["lost"]
    assert transport.session_id is None
    transport.deactivate()
    assert lost == ["lost"]
