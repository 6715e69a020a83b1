"""
RFID tunnel - realtime ingestion channel
========================================

Purpose
-------
Keep a live feed of detection events from the gateway through two redundant
transports that carry the same logical stream:

  • server-push : GET <base>/api/realtime/events  (text/event-stream, via httpx)
  • socket      : <ws base>/ws/events              (WebSocket, via websockets)

and present them to the rest of the app as ONE "connected" signal and ONE
message callback.

Key behaviors
-------------
- Each transport is a tiny state machine: connecting -> open -> closed.
- The channel is connected while ANY transport is open. One transport dropping
  does not flap the signal while the other is healthy.
- Every message from either transport goes to the same handler, synchronously,
  in arrival order. Transports are not de-duplicated against each other.
- No reconnect loop: redundancy is the two transports. The session decides
  when to connect again.
- disconnect() is idempotent and safe from inside the channel's own callbacks.
- Transport failures are logged and absorbed; nothing escapes the channel.

Server-push event names routed to the handler: the default "message" plus
"tag", "detection" and "event". Anything else is ignored.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx
import websockets

log = logging.getLogger("tunnel.realtime")

SSE_EVENT_NAMES = frozenset({"message", "tag", "detection", "event"})

MessageHandler = Callable[[str], Any]
ConnectedListener = Callable[[bool], Any]


class TransportState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


# ------------------------------------------------------------
# Server-sent events line decoder
# ------------------------------------------------------------

class SseDecoder:
    """
    Incremental text/event-stream decoder. Feed it one line at a time (with or
    without the line terminator); it returns (event_name, data) when a blank
    line completes an event, else None.
    """
    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[Tuple[str, str]]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keep-alive

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        # "id" and "retry" carry nothing we use
        return None

    def _dispatch(self) -> Optional[Tuple[str, str]]:
        if not self._data:
            self._event = ""
            return None
        out = (self._event or "message", "\n".join(self._data))
        self._event = ""
        self._data = []
        return out


# ------------------------------------------------------------
# Transports
# ------------------------------------------------------------

class TransportFactory(Protocol):
    def __call__(
        self,
        url: str,
        *,
        on_open: Callable[["Transport"], None],
        on_message: Callable[["Transport", str], None],
        on_down: Callable[["Transport"], None],
        timeout_s: float,
    ) -> "Transport": ...


class Transport:
    """
    Base transport: owns one asyncio task running _run(). Subclasses call
    _mark_open() once connected and _deliver(text) per message. When _run()
    returns or raises, the transport is closed and the channel is told via
    on_down, unless close() was requested first.
    """
    kind = "base"

    def __init__(
        self,
        url: str,
        *,
        on_open: Callable[["Transport"], None],
        on_message: Callable[["Transport", str], None],
        on_down: Callable[["Transport"], None],
        timeout_s: float = 5.0,
    ):
        self.url = url
        self.timeout_s = float(timeout_s)
        self.state = TransportState.CLOSED
        self.messages = 0
        self.last_error: Optional[str] = None
        self._on_open = on_open
        self._on_message = on_message
        self._on_down = on_down
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._closing = False
        self.state = TransportState.CONNECTING
        self._task = loop.create_task(self._guarded_run(), name=f"realtime[{self.kind}]")

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self.state = TransportState.CLOSED
        t, self._task = self._task, None
        if t is not None and not t.done():
            t.cancel()

    def status(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "state": self.state.value,
            "url": self.url,
            "messages": self.messages,
            "last_error": self.last_error,
        }

    # ---- hooks for subclasses ----
    def _mark_open(self) -> None:
        if self._closing:
            return
        self.state = TransportState.OPEN
        log.info("transport_open", extra={"transport": self.kind, "url": self.url})
        self._on_open(self)

    def _deliver(self, text: str) -> None:
        if self._closing:
            return
        self.messages += 1
        self._on_message(self, text)

    async def _run(self) -> None:  # pragma: no cover
        raise NotImplementedError

    async def _guarded_run(self) -> None:
        try:
            await self._run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            log.warning("transport_error", extra={"transport": self.kind, "url": self.url, "err": str(e)})
        finally:
            if not self._closing:
                self.state = TransportState.CLOSED
                log.info("transport_closed", extra={"transport": self.kind})
                self._on_down(self)


class SseTransport(Transport):
    """Long-lived GET with Accept: text/event-stream, read line by line."""
    kind = "sse"

    def __init__(self, url: str, *, http_transport: Optional[httpx.AsyncBaseTransport] = None, **kw):
        super().__init__(url, **kw)
        self._http_transport = http_transport

    async def _run(self) -> None:
        timeout = httpx.Timeout(self.timeout_s, read=None)
        kwargs: Dict[str, Any] = {"timeout": timeout}
        if self._http_transport is not None:
            kwargs["transport"] = self._http_transport
        async with httpx.AsyncClient(**kwargs) as client:
            headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
            async with client.stream("GET", self.url, headers=headers) as resp:
                if resp.status_code != 200:
                    raise RuntimeError(f"event stream HTTP {resp.status_code}")
                self._mark_open()
                decoder = SseDecoder()
                async for line in resp.aiter_lines():
                    ev = decoder.feed(line)
                    if ev is None:
                        continue
                    name, data = ev
                    if name in SSE_EVENT_NAMES:
                        self._deliver(data)
                    else:
                        log.debug("sse_event_ignored", extra={"event": name})


class WebSocketTransport(Transport):
    """One WebSocket; every text frame is a message (binary decoded as UTF-8)."""
    kind = "ws"

    async def _run(self) -> None:
        async with websockets.connect(self.url, open_timeout=self.timeout_s) as ws:
            self._mark_open()
            async for frame in ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8", errors="replace")
                self._deliver(frame)


# ------------------------------------------------------------
# Channel
# ------------------------------------------------------------

class UrlSource(Protocol):
    base_url: str
    def events_url(self, reader_id: Optional[str] = None) -> str: ...
    def ws_url(self, reader_id: Optional[str] = None) -> str: ...


class RealtimeChannel:
    """
    Wires: two transports -> one message handler + one derived connected flag.
    """
    def __init__(
        self,
        urls: UrlSource,
        on_message: MessageHandler,
        *,
        timeout_s: float = 5.0,
        sse_factory: TransportFactory = SseTransport,
        ws_factory: TransportFactory = WebSocketTransport,
    ):
        self.urls = urls
        self.on_message = on_message
        self.timeout_s = float(timeout_s)
        self._factories: List[Tuple[str, TransportFactory]] = [("sse", sse_factory), ("ws", ws_factory)]
        self.transports: List[Transport] = []
        self.reader_id: Optional[str] = None
        self._listeners: List[ConnectedListener] = []
        self._last_connected = False
        self._tearing_down = False

    # ---------- signal ----------
    @property
    def connected(self) -> bool:
        return any(t.state is TransportState.OPEN for t in self.transports)

    def add_listener(self, fn: ConnectedListener) -> None:
        self._listeners.append(fn)

    def _emit_connected(self) -> None:
        now = self.connected
        if now == self._last_connected:
            return
        self._last_connected = now
        log.info("channel_connected" if now else "channel_disconnected",
                 extra={"reader_id": self.reader_id})
        for fn in list(self._listeners):
            try:
                fn(now)
            except Exception:
                log.exception("connected_listener_failed")

    # ---------- lifecycle ----------
    def connect(self, reader_id: Optional[str] = None) -> None:
        """Tear down whatever is open, then open both transports."""
        self.disconnect()
        base = self.urls.base_url
        if not base:
            log.warning("connect_skipped_no_base_url")
            return

        self.reader_id = reader_id or None
        targets = {
            "sse": self.urls.events_url(self.reader_id),
            "ws": self.urls.ws_url(self.reader_id),
        }
        for kind, factory in self._factories:
            url = targets[kind]
            t: Optional[Transport] = None
            try:
                t = factory(
                    url,
                    on_open=self._transport_open,
                    on_message=self._transport_message,
                    on_down=self._transport_down,
                    timeout_s=self.timeout_s,
                )
                t.open()
            except Exception as e:
                log.warning("transport_start_failed", extra={"transport": kind, "url": url, "err": str(e)})
                if t is not None:
                    t.close()
                continue
            self.transports.append(t)
        self._emit_connected()

    def disconnect(self) -> None:
        """Close both transports. Safe to repeat and to call from callbacks."""
        if self._tearing_down:
            return
        self._tearing_down = True
        try:
            transports, self.transports = self.transports, []
            for t in transports:
                t.close()
        finally:
            self._tearing_down = False
        self._emit_connected()

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "reader_id": self.reader_id,
            "transports": [t.status() for t in self.transports],
        }

    # ---------- transport callbacks ----------
    def _transport_open(self, t: Transport) -> None:
        self._emit_connected()

    def _transport_down(self, t: Transport) -> None:
        # the derived flag only drops once no transport is open
        self._emit_connected()

    def _transport_message(self, t: Transport, text: str) -> None:
        try:
            self.on_message(text)
        except Exception:
            log.exception("message_handler_failed", extra={"transport": t.kind})
