from pairchat.codec import decode, encode
from pairchat.config import HubRuntimeConfig
from pairchat.constants import (
    B_ENTRY_CONTENT,
    B_ENTRY_SENDER,
    B_ENTRY_SEQ,
    B_PUB_CONTENT,
    B_PUB_SENDER,
    B_SUB_SINCE,
    K_BODY,
    K_ID,
    K_SESSION,
    K_T,
    T_ACK,
    T_ENTRY,
    T_ERROR,
    T_PING,
    T_PONG,
    T_PUBLISH,
    T_SUBSCRIBE,
    T_UNSUBSCRIBE,
)
from pairchat.envelope import make_envelope
from pairchat.hub import HubService


class FakeLink:
    def __init__(self, name: str) -> None:
        self.link_id = name.encode()

    def __repr__(self) -> str:
        return f"FakeLink({self.link_id!r})"


def _route(hub: HubService, link, env: dict) -> list[tuple[FakeLink, dict]]:
    outgoing: list = []
    hub.handle_packet(link, encode(env), outgoing)
    return [(out_link, decode(payload)) for out_link, payload in outgoing]


def _publish(session: str, sender: str, content: str) -> dict:
    return make_envelope(
        T_PUBLISH, session=session, body={B_PUB_SENDER: sender, B_PUB_CONTENT: content}
    )


def test_publish_fans_out_to_all_subscribers_including_sender() -> None:
    hub = HubService(HubRuntimeConfig())
    alice, bob = FakeLink("a"), FakeLink("b")
    _route(hub, alice, make_envelope(T_SUBSCRIBE, session="s1"))
    _route(hub, bob, make_envelope(T_SUBSCRIBE, session="s1"))

    pub = _publish("s1", "Alice", "hello")
    out = _route(hub, alice, pub)

    entries = [(link, env) for link, env in out if env[K_T] == T_ENTRY]
    assert [link for link, _ in entries] == [alice, bob]
    body = entries[0][1][K_BODY]
    assert body[B_ENTRY_SEQ] == 1
    assert body[B_ENTRY_SENDER] == "Alice"
    assert body[B_ENTRY_CONTENT] == "hello"

    link, ack = out[-1]
    assert link is alice
    assert ack[K_T] == T_ACK
    assert ack[K_ID] == pub[K_ID]
    assert ack[K_BODY] == 1


def test_entries_keep_append_order() -> None:
    hub = HubService(HubRuntimeConfig())
    bob = FakeLink("b")
    _route(hub, bob, make_envelope(T_SUBSCRIBE, session="s1"))

    seqs = []
    for i in range(5):
        for _, env in _route(hub, bob, _publish("s1", "Bob", f"m{i}")):
            if env[K_T] == T_ENTRY:
                seqs.append((env[K_BODY][B_ENTRY_SEQ], env[K_BODY][B_ENTRY_CONTENT]))
    assert seqs == [(1, "m0"), (2, "m1"), (3, "m2"), (4, "m3"), (5, "m4")]


def test_subscribe_twice_is_one_subscription() -> None:
    hub = HubService(HubRuntimeConfig())
    bob = FakeLink("b")
    _route(hub, bob, make_envelope(T_SUBSCRIBE, session="s1"))
    _route(hub, bob, make_envelope(T_SUBSCRIBE, session="s1"))

    out = _route(hub, FakeLink("a"), _publish("s1", "Alice", "hi"))
    assert [link for link, env in out if env[K_T] == T_ENTRY] == [bob]


def test_subscribe_replays_after_since() -> None:
    hub = HubService(HubRuntimeConfig())
    alice = FakeLink("a")
    for content in ("m1", "m2", "m3"):
        _route(hub, alice, _publish("s1", "Alice", content))

    sub = make_envelope(T_SUBSCRIBE, session="s1", body={B_SUB_SINCE: 1})
    out = _route(hub, FakeLink("b"), sub)
    assert [env[K_BODY][B_ENTRY_CONTENT] for _, env in out if env[K_T] == T_ENTRY] == ["m2", "m3"]
    assert out[-1][1][K_T] == T_ACK
    assert out[-1][1][K_BODY] == 3


def test_subscribe_without_since_is_live_only() -> None:
    hub = HubService(HubRuntimeConfig())
    _route(hub, FakeLink("a"), _publish("s1", "Alice", "old"))
    out = _route(hub, FakeLink("b"), make_envelope(T_SUBSCRIBE, session="s1"))
    assert [env[K_T] for _, env in out] == [T_ACK]


def test_unsubscribe_and_close_stop_delivery() -> None:
    hub = HubService(HubRuntimeConfig())
    alice, bob = FakeLink("a"), FakeLink("b")
    _route(hub, alice, make_envelope(T_SUBSCRIBE, session="s1"))
    _route(hub, bob, make_envelope(T_SUBSCRIBE, session="s1"))

    _route(hub, bob, make_envelope(T_UNSUBSCRIBE, session="s1"))
    hub._on_close(alice)

    out = _route(hub, FakeLink("c"), _publish("s1", "Carol", "anyone?"))
    assert [env[K_T] for _, env in out] == [T_ACK]


def test_invalid_input_yields_errors() -> None:
    hub = HubService(HubRuntimeConfig(max_content_bytes=8))
    link = FakeLink("a")

    outgoing: list = []
    hub.handle_packet(link, b"\x1c", outgoing)
    assert decode(outgoing[0][1])[K_T] == T_ERROR

    cases = [
        make_envelope(T_PUBLISH, body={B_PUB_SENDER: "Alice", B_PUB_CONTENT: "x"}),
        make_envelope(T_PUBLISH, session="s1", body="flat"),
        _publish("s1", "", "hi"),
        _publish("s1", "Alice", ""),
        _publish("s1", "Alice", "way too long for the limit"),
        make_envelope(99, session="s1"),
    ]
    for env in cases:
        out = _route(hub, link, env)
        assert [e[K_T] for _, e in out] == [T_ERROR]
        assert out[0][1][K_ID] == env[K_ID]

    assert hub.stats()["pkts_bad"] == 1
    assert hub.stats()["published"] == 0


def test_ping_pong() -> None:
    hub = HubService(HubRuntimeConfig())
    ping = make_envelope(T_PING, body=7)
    out = _route(hub, FakeLink("a"), ping)
    assert out[0][1][K_T] == T_PONG
    assert out[0][1][K_BODY] == 7
    assert out[0][1][K_ID] == ping[K_ID]
    assert K_SESSION not in out[0][1]
