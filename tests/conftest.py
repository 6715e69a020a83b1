"""
Shared fakes for the tunnel tests.

FakeTransport never touches the network: tests drive it by hand with
open_now(), push() and drop(). FakeGateway answers the session's gateway calls
from plain attributes and records what was asked of it. FakeTimers records
schedules instead of running them.
"""

from typing import Any, Dict, List, Optional

import pytest

from rfidtunnel.case_store import CaseStore, MemoryStore
from rfidtunnel.gateway_api import GatewayError, realtime_events_url, websocket_url
from rfidtunnel.read_aggregator import ReadAggregator
from rfidtunnel.realtime import RealtimeChannel, Transport, TransportState
from rfidtunnel.tunnel_session import TunnelSession


class FakeTransport(Transport):
    kind = "fake"

    def open(self) -> None:
        self._closing = False
        self.state = TransportState.CONNECTING

    def open_now(self) -> None:
        self._mark_open()

    def push(self, text: str) -> None:
        self._deliver(text)

    def drop(self) -> None:
        self.state = TransportState.CLOSED
        self._on_down(self)


class TransportRecorder:
    """Factory pair for RealtimeChannel that keeps every transport it built."""

    def __init__(self) -> None:
        self.created: List[FakeTransport] = []

    def factory(self, kind: str):
        def build(url: str, **kw) -> FakeTransport:
            t = FakeTransport(url, **kw)
            t.kind = kind
            self.created.append(t)
            return t
        return build

    def by_kind(self, kind: str) -> FakeTransport:
        return [t for t in self.created if t.kind == kind][-1]


class FakeTimers:
    def __init__(self) -> None:
        self.scheduled: List[Dict[str, Any]] = []

    def schedule(self, interval, callback, name="timer"):
        handle = {"interval": interval, "callback": callback, "name": name, "cancelled": False}
        self.scheduled.append(handle)
        return handle

    def cancel(self, handle) -> None:
        handle["cancelled"] = True

    def live(self, name: str) -> List[Dict[str, Any]]:
        return [h for h in self.scheduled if h["name"] == name and not h["cancelled"]]


class FakeGateway:
    def __init__(self, base_url: str = "http://gw.local"):
        self.base_url = base_url
        self.timeout = 5.0
        self.readers: List[Dict[str, Any]] = [{"id": "r1", "name": "Tunnel"}]
        self.antennas: List[Dict[str, Any]] = [
            {"id": "r1-a1", "readerId": "r1"},
            {"id": "r2-a1", "readerId": "r2"},
        ]
        self.status: Dict[str, Any] = {"connected": True, "reading": False}
        self.fail: Optional[str] = None
        self.calls: List[str] = []
        self.closed = False

    def events_url(self, reader_id=None, antenna=None):
        return realtime_events_url(self.base_url, reader_id, antenna)

    def ws_url(self, reader_id=None):
        return websocket_url(self.base_url, reader_id)

    def set_base_url(self, url):
        self.base_url = url
        return url

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.fail == op:
            raise GatewayError(f"{op} failed", 500)

    async def list_readers(self):
        self._check("list_readers")
        return list(self.readers)

    async def list_antennas(self):
        self._check("list_antennas")
        return list(self.antennas)

    async def get_reader_status(self, reader_id):
        self._check("status")
        return dict(self.status)

    async def start_reader(self, reader_id):
        self._check("start")
        self.status["reading"] = True

    async def stop_reader(self, reader_id):
        self._check("stop")
        self.status["reading"] = False

    async def reset_reader(self, reader_id):
        self._check("reset")

    async def reboot_reader(self, reader_id):
        self._check("reboot")

    async def reset_reader_antennas(self, reader_id):
        self._check("reset_antennas")

    async def aclose(self):
        self.closed = True


@pytest.fixture
def recorder():
    return TransportRecorder()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def session(gateway, timers, recorder, kv):
    agg = ReadAggregator(clock=lambda: 1_700_000_000.0)
    channel = RealtimeChannel(
        gateway,
        agg.on_message,
        sse_factory=recorder.factory("sse"),
        ws_factory=recorder.factory("ws"),
    )
    return TunnelSession(
        gateway,
        CaseStore(kv),
        timers=timers,
        aggregator=agg,
        channel=channel,
    )
