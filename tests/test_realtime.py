"""
Realtime channel: derived connected signal, message routing, teardown, the
server-push transport against a mocked event stream and the socket transport
against a local websockets server.
"""

import asyncio

import httpx
import websockets

from rfidtunnel.gateway_api import GatewayClient
from rfidtunnel.realtime import (
    RealtimeChannel,
    SseDecoder,
    SseTransport,
    TransportState,
    WebSocketTransport,
)


def _channel(recorder, base="http://gw.local", **kw):
    got = []
    ch = RealtimeChannel(
        GatewayClient(base),
        got.append,
        sse_factory=kw.pop("sse_factory", recorder.factory("sse")),
        ws_factory=kw.pop("ws_factory", recorder.factory("ws")),
    )
    return ch, got


def test_connect_opens_both_transports_with_reader_urls(recorder):
    ch, _ = _channel(recorder)
    ch.connect("reader 1")
    assert [t.kind for t in ch.transports] == ["sse", "ws"]
    assert recorder.by_kind("sse").url == "http://gw.local/api/realtime/events?readerId=reader+1"
    assert recorder.by_kind("ws").url == "ws://gw.local/ws/events?readerId=reader%201"
    assert ch.connected is False, "connecting is not connected"


def test_connected_is_derived_from_either_transport(recorder):
    ch, _ = _channel(recorder)
    seen = []
    ch.add_listener(seen.append)
    ch.connect()
    sse, ws = recorder.by_kind("sse"), recorder.by_kind("ws")

    ws.open_now()
    assert ch.connected is True
    sse.open_now()
    assert seen == [True], "second transport opening must not re-signal"

    ws.drop()
    assert ch.connected is True, "sse still open"
    sse.drop()
    assert ch.connected is False
    assert seen == [True, False]


def test_messages_from_both_transports_reach_one_handler(recorder):
    ch, got = _channel(recorder)
    ch.connect()
    sse, ws = recorder.by_kind("sse"), recorder.by_kind("ws")
    sse.open_now()
    ws.open_now()

    sse.push('{"epc": "AAAA1111"}')
    ws.push('{"epc": "AAAA1111"}')
    ws.push('{"epc": "BBBB2222"}')
    assert got == ['{"epc": "AAAA1111"}', '{"epc": "AAAA1111"}', '{"epc": "BBBB2222"}']
    assert sse.messages == 1 and ws.messages == 2


def test_handler_failure_does_not_escape(recorder):
    def boom(text):
        raise ValueError("bad handler")

    ch = RealtimeChannel(GatewayClient("http://gw.local"), boom,
                         sse_factory=recorder.factory("sse"), ws_factory=recorder.factory("ws"))
    ch.connect()
    recorder.by_kind("sse").open_now()
    recorder.by_kind("sse").push("x")
    assert ch.connected is True


def test_disconnect_twice_is_harmless(recorder):
    ch, _ = _channel(recorder)
    ch.disconnect()
    assert ch.connected is False

    ch.connect()
    recorder.by_kind("sse").open_now()
    ch.disconnect()
    assert ch.connected is False
    ch.disconnect()
    assert ch.connected is False
    assert ch.transports == []
    assert all(t.state is TransportState.CLOSED for t in recorder.created)


def test_closed_transport_stops_delivering(recorder):
    ch, got = _channel(recorder)
    ch.connect()
    sse = recorder.by_kind("sse")
    sse.open_now()
    ch.disconnect()
    sse.push("late")
    assert got == []


def test_disconnect_from_inside_a_listener(recorder):
    ch, _ = _channel(recorder)
    seen = []

    def on_change(connected):
        seen.append(connected)
        if connected:
            ch.disconnect()

    ch.add_listener(on_change)
    ch.connect()
    recorder.by_kind("ws").open_now()
    assert seen == [True, False]
    assert ch.connected is False


def test_reconnect_tears_down_previous_transports(recorder):
    ch, _ = _channel(recorder)
    ch.connect("r1")
    first = list(ch.transports)
    ch.connect("r2")
    assert all(t.state is TransportState.CLOSED for t in first)
    assert len(ch.transports) == 2
    assert ch.reader_id == "r2"


def test_one_transport_failing_to_build_keeps_the_other(recorder):
    def broken(url, **kw):
        raise RuntimeError("cannot build")

    ch, _ = _channel(recorder, sse_factory=broken)
    ch.connect()
    assert [t.kind for t in ch.transports] == ["ws"]
    recorder.by_kind("ws").open_now()
    assert ch.connected is True


def test_both_transports_failing_reports_disconnected(recorder):
    def broken(url, **kw):
        raise RuntimeError("cannot build")

    ch, _ = _channel(recorder, sse_factory=broken, ws_factory=broken)
    ch.connect()
    assert ch.transports == []
    assert ch.connected is False


def test_no_base_url_is_a_noop(recorder):
    ch, _ = _channel(recorder, base="")
    ch.connect("r1")
    assert recorder.created == []
    assert ch.status()["connected"] is False


def test_sse_decoder_events():
    dec = SseDecoder()
    assert dec.feed(": keep-alive") is None
    assert dec.feed("data: {\"epc\":") is None
    assert dec.feed("data: \"A1\"}") is None
    assert dec.feed("") == ("message", '{"epc":\n"A1"}')
    assert dec.feed("event: tag\n") is None
    assert dec.feed("id: 7") is None
    assert dec.feed("data:E2801160") is None
    assert dec.feed("\r\n") == ("tag", "E2801160")
    assert dec.feed("") is None, "blank line with no data dispatches nothing"


def _run_sse(handler):
    got, downs, opens = [], [], []
    t = SseTransport(
        "http://gw.local/api/realtime/events",
        http_transport=httpx.MockTransport(handler),
        on_open=opens.append,
        on_message=lambda tr, text: got.append(text),
        on_down=downs.append,
    )

    async def run():
        t.open()
        task = t._task
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(run())
    return t, got, downs, opens


def test_sse_transport_routes_known_event_names():
    body = (
        'data: {"epc": "AAAA1111"}\n\n'
        "event: detection\ndata: BBBB2222\n\n"
        "event: heartbeat\ndata: ignored\n\n"
        "event: tag\ndata: CCCC3333\n\n"
        "event: ping\ndata: ignored\n\n"
    )

    def handler(request):
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    t, got, downs, opens = _run_sse(handler)
    assert got == ['{"epc": "AAAA1111"}', "BBBB2222", "CCCC3333"]
    assert len(opens) == 1
    assert len(downs) == 1, "stream end is reported as transport down"
    assert t.state is TransportState.CLOSED


def test_sse_transport_http_error_goes_down():
    t, got, downs, opens = _run_sse(lambda request: httpx.Response(503))
    assert got == []
    assert opens == []
    assert len(downs) == 1
    assert "503" in (t.last_error or "")


def test_websocket_transport_delivers_text_and_binary_frames():
    got, downs, opens = [], [], []

    async def serve_three_frames(ws):
        await ws.send('{"epc": "AAAA1111"}')
        await ws.send(b"BBBB2222")
        await ws.send(b"\xffCCCC3333")

    async def run():
        async with websockets.serve(serve_three_frames, "127.0.0.1", 0) as srv:
            port = next(iter(srv.sockets)).getsockname()[1]
            t = WebSocketTransport(
                f"ws://127.0.0.1:{port}/ws/events?readerId=r1",
                on_open=opens.append,
                on_message=lambda tr, text: got.append(text),
                on_down=downs.append,
            )
            t.open()
            await asyncio.wait_for(t._task, timeout=5)
            return t

    t = asyncio.run(run())
    assert got == ['{"epc": "AAAA1111"}', "BBBB2222", "\ufffdCCCC3333"], "frames arrive in order, binary decoded"
    assert opens == [t]
    assert downs == [t], "server closing the socket is reported as transport down"
    assert t.state is TransportState.CLOSED
    assert t.messages == 3
