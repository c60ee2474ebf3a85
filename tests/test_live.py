"""Tests for perch.live — protocol, broker decisions, and SSE streaming."""

import asyncio
import json

import pytest

from perch.build.events import BuildEvent, BuildEventBus
from perch.config import PerchConfig
from perch.errors import BuildError
from perch.live.broker import LiveUpdateBroker
from perch.live.client import LIVE_CLIENT_PATH, live_client_tag
from perch.live.connection import ConnectionState
from perch.live.protocol import (
    Ack,
    ErrorMessage,
    MessageKind,
    Patch,
    ProtocolError,
    Reload,
    SSEEvent,
    Subscribe,
    decode_client_message,
    decode_stream,
    encode_message,
)
from perch.live.sse import handle_sse


PAGE = "view/page.html"
ABOUT = "view/about/page.html"


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _event(entry: str, digest: str, *changed: str) -> BuildEvent:
    return BuildEvent(entry, digest, changed=frozenset(changed or (entry,)))


def _drain(broker: LiveUpdateBroker, client_id: str) -> list[tuple[int, object]]:
    conn = broker.get(client_id)
    assert conn is not None
    items = []
    while not conn.queue.empty():
        item = conn.queue.get_nowait()
        if item is not None:
            items.append(item)
    return items


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker(clock: FakeClock) -> LiveUpdateBroker:
    return LiveUpdateBroker(PerchConfig(ack_timeout=2.0), clock=clock)


class TestProtocol:
    def test_encode_patch(self) -> None:
        event = encode_message(Patch(PAGE, "abc", {"changed": [PAGE]}), seq=7)
        assert event.event == "patch"
        assert event.id == "7"
        assert json.loads(event.data) == {"entry": PAGE, "hash": "abc", "payload": {"changed": [PAGE]}}

    def test_wire_format(self) -> None:
        wire = encode_message(Reload("layout"), seq=1).encode()
        assert wire == 'event: reload\nid: 1\ndata: {"reason":"layout"}\n\n'

    def test_decode_stream(self) -> None:
        raw = (
            "retry: 1000\n\n"
            ": heartbeat\n\n"
            "event: patch\r\nid: 3\r\ndata: first\r\ndata:second\r\n\r\n"
            ": comment\n\n"
            + SSEEvent(data="{}", event="reload", retry=500).encode()
        )
        events, heartbeats = decode_stream(raw)
        assert heartbeats == 1
        assert events == [
            SSEEvent(data="first\nsecond", event="patch", id="3"),
            SSEEvent(data="{}", event="reload", retry=500),
        ]

    def test_decode_subscribe(self) -> None:
        message = decode_client_message(
            MessageKind.SUBSCRIBE, b'{"client": "tab", "entries": ["a", "b"]}'
        )
        assert message == Subscribe("tab", frozenset({"a", "b"}))

    def test_decode_ack(self) -> None:
        message = decode_client_message(
            MessageKind.ACK, b'{"client": "tab", "entry": "a", "hash": "h"}'
        )
        assert message == Ack("tab", "a", "h")

    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[]", b'{"entries": []}', b'{"client": "tab", "entries": "a"}'],
    )
    def test_decode_rejects_malformed(self, body: bytes) -> None:
        with pytest.raises(ProtocolError):
            decode_client_message(MessageKind.SUBSCRIBE, body)

    def test_server_kinds_are_not_client_messages(self) -> None:
        with pytest.raises(ProtocolError):
            decode_client_message(MessageKind.PATCH, b'{"client": "tab"}')


class TestConnections:
    def test_stream_adopts_subscribed_connection(self, broker: LiveUpdateBroker) -> None:
        subscribed = broker.subscribe("tab", {PAGE})
        assert broker.connect("tab") is subscribed
        assert subscribed.streaming

    async def test_reconnect_replaces_previous_stream(self, broker: LiveUpdateBroker) -> None:
        first = broker.connect("tab")
        broker.subscribe("tab", {PAGE})
        broker.on_build(_event(PAGE, "h1"))
        old_stream = broker.stream(first)
        assert (await anext(old_stream))[0] == 1

        second = broker.connect("tab")
        assert second is not first
        assert broker.get("tab") is second
        assert second.entries == frozenset({PAGE})
        assert second.state is ConnectionState.SUBSCRIBED
        with pytest.raises(StopAsyncIteration):
            await anext(old_stream)

        broker.on_build(_event(PAGE, "h2"))
        seq, message = await asyncio.wait_for(anext(broker.stream(second)), 1.0)
        assert (seq, message.hash) == (2, "h2")  # type: ignore[union-attr]
        assert first.queue.empty()

    def test_subscribe_transitions(self, broker: LiveUpdateBroker) -> None:
        conn = broker.connect("tab")
        assert conn.state is ConnectionState.CONNECTED
        broker.subscribe("tab", {PAGE})
        assert conn.state is ConnectionState.SUBSCRIBED

    def test_disconnect_closes_stream(self, broker: LiveUpdateBroker) -> None:
        conn = broker.connect("tab")
        broker.disconnect("tab")
        assert conn.state is ConnectionState.DISCONNECTED
        assert broker.connections == []
        assert conn.queue.get_nowait() is None


class TestPatchOrReload:
    def test_leaf_change_patches_subscribers_only(self, broker: LiveUpdateBroker) -> None:
        broker.subscribe("home", {PAGE})
        broker.subscribe("about", {ABOUT})

        delivered = broker.on_build(_event(PAGE, "h1"))

        assert delivered == 1
        (seq, message), = _drain(broker, "home")
        assert seq == 1
        assert isinstance(message, Patch)
        assert message.hash == "h1"
        assert _drain(broker, "about") == []
        assert broker.get("home").state is ConnectionState.PUSHING  # type: ignore[union-attr]

    def test_layout_change_reloads(self, broker: LiveUpdateBroker) -> None:
        broker.subscribe("home", {PAGE})
        broker.on_build(_event(PAGE, "h1", PAGE, "view/layout.html"))
        (_, message), = _drain(broker, "home")
        assert message == Reload("layout")

    def test_messages_keep_event_order(self, broker: LiveUpdateBroker) -> None:
        broker.subscribe("tab", {PAGE})
        for digest in ("h1", "h2", "h3"):
            broker.on_build(_event(PAGE, digest))
            broker.ack("tab", PAGE, digest)
        items = _drain(broker, "tab")
        assert [seq for seq, _ in items] == [1, 2, 3]
        assert [msg.hash for _, msg in items] == ["h1", "h2", "h3"]  # type: ignore[attr-defined]

    def test_ack_clears_pending(self, broker: LiveUpdateBroker) -> None:
        conn = broker.subscribe("tab", {PAGE})
        broker.on_build(_event(PAGE, "h1"))
        broker.ack("tab", PAGE, "h1")
        assert conn.pending == {}
        assert conn.state is ConnectionState.ACKED

    def test_stale_ack_ignored(self, broker: LiveUpdateBroker) -> None:
        conn = broker.subscribe("tab", {PAGE})
        broker.on_build(_event(PAGE, "h1"))
        broker.on_build(_event(PAGE, "h2"))
        broker.ack("tab", PAGE, "h1")
        assert conn.pending[PAGE].hash == "h2"

    def test_build_error_broadcasts_diagnostic(self, broker: LiveUpdateBroker) -> None:
        broker.subscribe("home", {PAGE})
        broker.connect("idle")
        error = BuildError(PAGE, PAGE, "unexpected end", 3)
        assert broker.on_build(BuildEvent(PAGE, None, error=error)) == 2
        (_, message), = _drain(broker, "idle")
        assert isinstance(message, ErrorMessage)
        assert message.diagnostic["line"] == 3

    def test_patch_payload_includes_asset_url(self, clock: FakeClock) -> None:
        broker = LiveUpdateBroker(
            PerchConfig(), clock=clock, asset_url=lambda entry: f"/_perch/assets/{entry}"
        )
        broker.subscribe("tab", {PAGE})
        broker.on_build(_event(PAGE, "h1"))
        (_, message), = _drain(broker, "tab")
        assert message.payload == {"changed": [PAGE], "asset": f"/_perch/assets/{PAGE}"}  # type: ignore[attr-defined]


class TestDesync:
    def test_missed_ack_forces_exactly_one_reload(
        self, broker: LiveUpdateBroker, clock: FakeClock
    ) -> None:
        broker.subscribe("tab", {PAGE})
        broker.on_build(_event(PAGE, "h1"))
        clock.now += 5.0  # past ack_timeout

        broker.on_build(_event(PAGE, "h2"))
        broker.on_build(_event(PAGE, "h3"))

        messages = [msg for _, msg in _drain(broker, "tab")]
        assert messages[0] == Patch(PAGE, "h1", messages[0].payload)  # type: ignore[union-attr]
        assert messages[1] == Reload("desync")
        assert isinstance(messages[2], Patch) and messages[2].hash == "h3"

    def test_acked_in_time_stays_in_sync(
        self, broker: LiveUpdateBroker, clock: FakeClock
    ) -> None:
        broker.subscribe("tab", {PAGE})
        broker.on_build(_event(PAGE, "h1"))
        clock.now += 1.0
        broker.ack("tab", PAGE, "h1")
        clock.now += 5.0
        broker.on_build(_event(PAGE, "h2"))
        kinds = [msg.kind for _, msg in _drain(broker, "tab")]
        assert kinds == [MessageKind.PATCH, MessageKind.PATCH]


class TestDelivery:
    async def test_pump_and_stream(self, broker: LiveUpdateBroker) -> None:
        bus = BuildEventBus()
        broker.subscribe("tab", {PAGE})
        pump = asyncio.create_task(broker.pump(bus.subscribe()))

        bus.emit(_event(PAGE, "h1"))
        stream = broker.stream(broker.connect("tab"))
        seq, message = await asyncio.wait_for(anext(stream), 1.0)
        assert (seq, message.hash) == (1, "h1")  # type: ignore[union-attr]

        bus.close()
        await asyncio.wait_for(pump, 1.0)
        broker.disconnect("tab")
        with pytest.raises(StopAsyncIteration):
            await anext(stream)


class TestHandleSSE:
    async def test_streams_events_and_stops_on_disconnect(self) -> None:
        sent: list[dict] = []
        disconnect = asyncio.Event()

        async def receive() -> dict:
            await disconnect.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)

        async def events():
            yield SSEEvent(data="one", event="patch", id="1")
            yield SSEEvent(data="two", event="patch", id="2")
            await asyncio.sleep(10)

        task = asyncio.create_task(handle_sse(events(), send, receive, heartbeat_interval=0.02))
        await asyncio.sleep(0.1)
        disconnect.set()
        await asyncio.wait_for(task, 1.0)

        assert sent[0]["status"] == 200
        assert (b"content-type", b"text/event-stream") in sent[0]["headers"]
        body = "".join(m.get("body", b"").decode() for m in sent[1:])
        parsed, heartbeats = decode_stream(body)
        assert [e.data for e in parsed] == ["one", "two"]
        assert heartbeats >= 1
        assert sent[-1] == {"type": "http.response.body", "body": b"", "more_body": False}


class TestClientTag:
    def test_tag_carries_entry_and_hash(self) -> None:
        tag = live_client_tag("view/users/[id]/page.html", "abc", base="//localhost:4000")
        assert 'data-entry="view/users/[id]/page.html"' in tag
        assert 'data-hash="abc"' in tag
        assert f'src="//localhost:4000{LIVE_CLIENT_PATH}"' in tag
