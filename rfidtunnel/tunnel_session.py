"""
RFID tunnel - session orchestrator
==================================

Purpose
-------
Wire the pieces an operator drives at the reading tunnel:

    GatewayClient  --status poll-->  reader status
         |                              | reading and not connected
         v                              v
    RealtimeChannel --messages--> ReadAggregator --read set--> case_engine
                                                      ^
    CaseStore (cases, expired flags) -----------------+

Key behaviors
-------------
- Reader listing: on start and, while no reader is found, re-listed every
  `reader_retry_s` seconds with a visible countdown.
- Status poll: every `status_poll_s` for the selected reader; when the reader
  reports `reading` and the channel is down, the channel is connected.
- Presentation refresh tick: every `ui_refresh_s` while reading; listeners
  registered with add_refresh_listener() are called on each tick.
- Each timer purpose has one slot; restarting cancels the previous timer.
  Explicit disconnect stops the status poll and refresh tick; close() stops
  everything.
- Gateway failures never touch read or case state; they land in `error` for
  the operator and in the log.
- Destructive reader operations are refused while the reader is reading.

CLI
---
    python -m rfidtunnel.tunnel_session --config config/config.yaml [--reader ID]
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional

from . import config_loader as _config_module
from .case_engine import parse_simulated_reads, reconcile
from .case_store import CaseStore, SqliteStore
from .gateway_api import GatewayClient, GatewayError
from .read_aggregator import ReadAggregator
from .realtime import RealtimeChannel
from .timers import AsyncioTimers, TimerSlot, Timers

log = logging.getLogger("tunnel.session")


class TunnelSession:
    def __init__(
        self,
        gateway: GatewayClient,
        cases: CaseStore,
        *,
        tunnel_cfg: Optional[Dict[str, Any]] = None,
        timers: Optional[Timers] = None,
        aggregator: Optional[ReadAggregator] = None,
        channel: Optional[RealtimeChannel] = None,
    ):
        cfg = dict(_config_module.TUNNEL_DEFAULTS)
        cfg.update(tunnel_cfg or {})
        self.status_poll_s = float(cfg["status_poll_s"])
        self.ui_refresh_s = float(cfg["ui_refresh_s"])
        self.reader_retry_s = int(cfg["reader_retry_s"])

        self.gateway = gateway
        self.cases = cases
        self.aggregator = aggregator or ReadAggregator(
            max_events=int(cfg["max_events"]),
            min_tag_len=int(cfg["min_tag_len"]),
        )
        self.channel = channel or RealtimeChannel(
            gateway, self.aggregator.on_message, timeout_s=gateway.timeout
        )

        self.timers: Timers = timers or AsyncioTimers()
        self._status_poll = TimerSlot(self.timers, "status_poll")
        self._ui_refresh = TimerSlot(self.timers, "ui_refresh")
        self._reader_retry = TimerSlot(self.timers, "reader_retry")

        self.readers: List[Dict[str, Any]] = []
        self.antennas: List[Dict[str, Any]] = []
        self.selected_reader_id: str = ""
        self.reader_status: Optional[Dict[str, Any]] = None
        self.loading = False
        self.error = ""
        self.retry_countdown = self.reader_retry_s

        self.simulated_text = ""
        self.show_simulated = cases.show_simulated(default=True)

        self.refresh_ticks = 0
        self._refresh_listeners: List[Callable[[], Any]] = []

    # ---------- derived ----------
    @property
    def is_reading(self) -> bool:
        return bool((self.reader_status or {}).get("reading"))

    @property
    def needs_retry(self) -> bool:
        return not self.loading and bool(self.gateway.base_url) and not self.readers

    def effective_read_tags(self) -> List[str]:
        """Simulated reads when the operator chose them, else the live tag table."""
        if self.show_simulated:
            return parse_simulated_reads(self.simulated_text)
        return list(self.aggregator.tag_counts.keys())

    def case_report(self) -> Dict[str, Any]:
        return reconcile(self.cases.cases, self.effective_read_tags())

    def filtered_antennas(self) -> List[Dict[str, Any]]:
        rid = self.selected_reader_id
        if not rid:
            return list(self.antennas)
        return [
            a for a in self.antennas
            if a.get("readerId") == rid or str(a.get("id") or "").startswith(rid)
        ]

    # ---------- lifecycle ----------
    async def start(self) -> None:
        await self.load_readers()
        await self.load_antennas()
        self.retry_countdown = self.reader_retry_s
        self._reader_retry.start(1.0, self._retry_tick)

    async def close(self) -> None:
        self._reader_retry.stop()
        self._status_poll.stop()
        self.disconnect_realtime()
        await self.gateway.aclose()
        log.info(
            "session_closed",
            extra={
                "events_received": self.aggregator.events_received,
                "total_reads": self.aggregator.total_reads,
                "unique": self.aggregator.unique_count,
            },
        )

    async def set_base_url(self, url: str) -> str:
        base = self.gateway.set_base_url(url)
        self.error = ""
        await self.load_readers()
        await self.load_antennas()
        return base

    # ---------- readers ----------
    async def load_readers(self) -> None:
        if not self.gateway.base_url:
            return
        self.loading = True
        self.error = ""
        try:
            readers = await self.gateway.list_readers()
        except GatewayError as e:
            self.error = str(e) or "Failed to load readers"
            log.warning("load_readers_failed", extra={"err": self.error})
            return
        finally:
            self.loading = False

        self.readers = readers
        if readers and not self.selected_reader_id:
            self.selected_reader_id = str(readers[0].get("id") or "")
            self.restart_status_polling()
        await self.refresh_status()

    async def load_antennas(self) -> None:
        if not self.gateway.base_url:
            return
        try:
            self.antennas = await self.gateway.list_antennas()
        except GatewayError:
            self.antennas = []

    async def select_reader(self, reader_id: str) -> None:
        self.selected_reader_id = reader_id or ""
        await self.refresh_status()
        self.restart_status_polling()

    async def refresh_status(self) -> None:
        if not self.selected_reader_id:
            self.reader_status = None
            return
        try:
            status = await self.gateway.get_reader_status(self.selected_reader_id)
        except GatewayError:
            self.reader_status = None
            return
        self.reader_status = status
        if status.get("reading") and not self.channel.connected:
            self.connect_realtime()
            self.start_ui_refresh()

    # ---------- timers ----------
    def restart_status_polling(self) -> None:
        self._status_poll.stop()
        if not self.selected_reader_id:
            return
        self._status_poll.start(self.status_poll_s, self.refresh_status)

    def stop_status_polling(self) -> None:
        self._status_poll.stop()

    def start_ui_refresh(self) -> None:
        self._ui_refresh.start(self.ui_refresh_s, self._refresh_tick)

    def stop_ui_refresh(self) -> None:
        self._ui_refresh.stop()

    def add_refresh_listener(self, fn: Callable[[], Any]) -> None:
        self._refresh_listeners.append(fn)

    def _refresh_tick(self) -> None:
        self.refresh_ticks += 1
        for fn in list(self._refresh_listeners):
            try:
                fn()
            except Exception:
                log.exception("refresh_listener_failed")

    async def _retry_tick(self) -> None:
        if not self.needs_retry:
            self.retry_countdown = self.reader_retry_s
            return
        if self.retry_countdown > 0:
            self.retry_countdown -= 1
            return
        self.retry_countdown = self.reader_retry_s
        log.info("reader_retry", extra={"base_url": self.gateway.base_url})
        await self.load_readers()
        await self.load_antennas()

    @property
    def timers_running(self) -> Dict[str, bool]:
        return {
            "status_poll": self._status_poll.running,
            "ui_refresh": self._ui_refresh.running,
            "reader_retry": self._reader_retry.running,
        }

    # ---------- realtime ----------
    def connect_realtime(self) -> None:
        self.channel.connect(self.selected_reader_id or None)

    def disconnect_realtime(self) -> None:
        self.stop_ui_refresh()
        self.stop_status_polling()
        self.channel.disconnect()

    # ---------- reader operations ----------
    async def start_reading(self) -> bool:
        if not self.selected_reader_id or self.is_reading:
            return False
        self.error = ""
        self.connect_realtime()
        self.start_ui_refresh()
        if not await self._reader_call("start", self.gateway.start_reader):
            return False
        self.restart_status_polling()
        await self.refresh_status()
        return True

    async def stop_reading(self) -> bool:
        if not self.selected_reader_id:
            return False
        self.error = ""
        if not await self._reader_call("stop", self.gateway.stop_reader):
            return False
        await self.refresh_status()
        self.disconnect_realtime()
        return True

    async def reset_reader(self) -> bool:
        return await self._idle_reader_call("reset", self.gateway.reset_reader)

    async def reboot_reader(self) -> bool:
        return await self._idle_reader_call("reboot", self.gateway.reboot_reader)

    async def reset_antennas(self) -> bool:
        if not await self._idle_reader_call("reset_antennas", self.gateway.reset_reader_antennas,
                                            refresh=False):
            return False
        await self.load_antennas()
        return True

    async def _idle_reader_call(self, op: str, fn, refresh: bool = True) -> bool:
        if not self.selected_reader_id or self.is_reading:
            return False
        self.error = ""
        if not await self._reader_call(op, fn):
            return False
        if refresh:
            await self.refresh_status()
        return True

    async def _reader_call(self, op: str, fn) -> bool:
        try:
            await fn(self.selected_reader_id)
        except GatewayError as e:
            self.error = str(e) or "Error"
            log.warning("reader_op_failed", extra={"op": op, "reader_id": self.selected_reader_id, "err": self.error})
            return False
        log.info("reader_op", extra={"op": op, "reader_id": self.selected_reader_id})
        return True

    # ---------- read source ----------
    def set_simulated(self, text: Optional[str] = None, show: Optional[bool] = None) -> None:
        if text is not None:
            self.simulated_text = text
        if show is not None and show != self.show_simulated:
            self.show_simulated = show
            self.cases.set_show_simulated(show)

    # ---------- presentation ----------
    def snapshot(self) -> Dict[str, Any]:
        return {
            "base_url": self.gateway.base_url,
            "readers": self.readers,
            "antennas": self.filtered_antennas(),
            "selected_reader_id": self.selected_reader_id,
            "reader_status": self.reader_status,
            "reading": self.is_reading,
            "loading": self.loading,
            "error": self.error,
            "needs_retry": self.needs_retry,
            "retry_countdown": self.retry_countdown,
            "channel": self.channel.status(),
            "show_simulated": self.show_simulated,
            "events_received": self.aggregator.events_received,
            "total_reads": self.aggregator.total_reads,
            "unique_count": self.aggregator.unique_count,
            "timers": self.timers_running,
        }


# ------------------------------------------------------------
# Factory from config
# ------------------------------------------------------------

def build_session(timers: Optional[Timers] = None) -> TunnelSession:
    gw = _config_module.get_gateway_cfg()
    kv = SqliteStore(_config_module.get_store_path())
    gateway = GatewayClient(
        str(gw.get("base_url") or ""),
        timeout_ms=int(gw.get("timeout_ms", 5000)),
        events_path=str(gw.get("events_path")),
        ws_path=str(gw.get("ws_path")),
        store=kv,
    )
    return TunnelSession(
        gateway,
        CaseStore(kv),
        tunnel_cfg=_config_module.get_tunnel_cfg(),
        timers=timers,
    )


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def _parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="RFID tunnel headless reader")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--reader", help="Reader id to follow (default: first listed)")
    ap.add_argument("--heartbeat-s", type=float, default=10.0, help="Counter log period")
    return ap.parse_args()


async def _heartbeat(session: TunnelSession, period_s: float) -> None:
    """Periodic log line so ops can see counters move."""
    hb = logging.getLogger("tunnel.hb")
    while True:
        await asyncio.sleep(period_s)
        report = session.case_report()
        hb.info(
            "heartbeat",
            extra={
                "connected": session.channel.connected,
                "events_received": session.aggregator.events_received,
                "total_reads": session.aggregator.total_reads,
                "unique": session.aggregator.unique_count,
                "status": report["status"],
                "cases_complete": report["cases_complete"],
                "cases_total": report["cases_total"],
            },
        )


async def _amain() -> None:
    args = _parse_args()

    if args.config:
        _config_module.CONFIG = _config_module.load_config(args.config)

    logging.basicConfig(
        level=getattr(logging, _config_module.get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    session = build_session()
    # headless: reconcile against the live table without touching the saved preference
    session.show_simulated = False
    await session.start()
    if args.reader:
        await session.select_reader(args.reader)
    session.connect_realtime()

    hb_task = asyncio.create_task(_heartbeat(session, args.heartbeat_s), name="tunnel_heartbeat")
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        log.info("session_cancelled")
    finally:
        hb_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await hb_task
        await session.close()


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_amain())
