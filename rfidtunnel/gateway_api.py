from __future__ import annotations
"""
rfidtunnel/gateway_api.py
-------------------------
Async client for the RFID gateway's device-management API and the realtime
URL helpers used by the ingestion channel.

    GET  /api/readers                      list readers
    GET  /api/readers/{id}                 one reader
    GET  /api/readers/{id}/status          {"connected": bool, "reading": bool}
    POST /api/readers/{id}/start|stop|reset|reboot
    POST /api/readers/{id}/antennas/reset
    GET  /api/antennas                     list antennas
    GET  /api/antennas/{id}
    POST /api/antennas/{id}/reset
    PUT  /api/antennas/{id}

Every failure (network, timeout, non-2xx, bad JSON) surfaces as GatewayError
with a message fit for an operator; retry policy belongs to the caller.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from .case_store import KeyValueStore

log = logging.getLogger("tunnel.gateway")

API_BASE_KEY = "rfid_api_base_url"
EVENTS_PATH = "/api/realtime/events"
WS_PATH = "/ws/events"


class GatewayError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def ensure_absolute_url(url: str) -> str:
    """'rfid.local:8080/' -> 'http://rfid.local:8080'; blank stays blank."""
    u = (url or "").strip()
    if not u:
        return ""
    u = u.rstrip("/")
    if u.startswith("http://") or u.startswith("https://"):
        return u
    return f"http://{u}"


def realtime_events_url(base_url: str, reader_id: Optional[str] = None,
                        antenna: Optional[str] = None, path: str = EVENTS_PATH) -> str:
    params: Dict[str, str] = {}
    if reader_id:
        params["readerId"] = reader_id
    if antenna:
        params["antenna"] = antenna
    qs = urlencode(params)
    return f"{base_url}{path}" + (f"?{qs}" if qs else "")


def websocket_url(base_url: str, reader_id: Optional[str] = None, path: str = WS_PATH) -> str:
    """Same host as the REST API with http->ws (https->wss)."""
    base = base_url
    if base.startswith("http"):
        base = "ws" + base[len("http"):]
    url = base + path
    if reader_id:
        url += f"?readerId={quote(reader_id, safe='')}"
    return url


class GatewayClient:
    """
    Thin async wrapper over httpx. One shared AsyncClient, created lazily and
    rebuilt when the base URL changes.
    """
    def __init__(
        self,
        base_url: str = "",
        *,
        timeout_ms: int = 5000,
        events_path: str = EVENTS_PATH,
        ws_path: str = WS_PATH,
        store: Optional[KeyValueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout_ms / 1000.0
        self.events_path = events_path
        self.ws_path = ws_path
        self.store = store
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pending_close: List[httpx.AsyncClient] = []

        raw = (store.get(API_BASE_KEY) if store is not None else None) or base_url or ""
        self.base_url = ensure_absolute_url(raw)
        if store is not None and self.base_url and raw != self.base_url:
            store.set(API_BASE_KEY, self.base_url)

    # ---------- base URL ----------
    def set_base_url(self, url: str) -> str:
        self.base_url = ensure_absolute_url(url)
        if self.store is not None:
            self.store.set(API_BASE_KEY, self.base_url)
        if self._client is not None:
            # drop the old connection pool; next call rebuilds against the new host
            self._pending_close.append(self._client)
            self._client = None
        log.info("gateway_base_url", extra={"base_url": self.base_url})
        return self.base_url

    def events_url(self, reader_id: Optional[str] = None, antenna: Optional[str] = None) -> str:
        return realtime_events_url(self.base_url, reader_id, antenna, path=self.events_path)

    def ws_url(self, reader_id: Optional[str] = None) -> str:
        return websocket_url(self.base_url, reader_id, path=self.ws_path)

    # ---------- plumbing ----------
    def _http(self) -> httpx.AsyncClient:
        if not self.base_url:
            raise GatewayError("Gateway base URL is not configured")
        if self._client is None:
            kwargs: Dict[str, Any] = {"base_url": self.base_url, "timeout": self.timeout}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self) -> None:
        pending, self._pending_close = self._pending_close, []
        for client in pending:
            await client.aclose()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        client = self._http()
        try:
            resp = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            log.warning("gateway_error", extra={"method": method, "path": path, "err": str(e)})
            raise GatewayError(f"{method} {path} failed: {e}") from e

        if not (200 <= resp.status_code < 300):
            detail = _error_detail(resp)
            log.warning(
                "gateway_non_2xx",
                extra={"method": method, "path": path, "status": resp.status_code},
            )
            raise GatewayError(detail or f"{method} {path} -> HTTP {resp.status_code}", resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # ---------- readers ----------
    async def list_readers(self) -> List[Dict[str, Any]]:
        return _as_list(await self._request("GET", "/api/readers"))

    async def get_reader(self, reader_id: str) -> Dict[str, Any]:
        return _as_dict(await self._request("GET", f"/api/readers/{reader_id}"))

    async def get_reader_status(self, reader_id: str) -> Dict[str, Any]:
        return _as_dict(await self._request("GET", f"/api/readers/{reader_id}/status"))

    async def start_reader(self, reader_id: str) -> Any:
        return await self._request("POST", f"/api/readers/{reader_id}/start", json={})

    async def stop_reader(self, reader_id: str) -> Any:
        return await self._request("POST", f"/api/readers/{reader_id}/stop", json={})

    async def reset_reader(self, reader_id: str) -> Any:
        return await self._request("POST", f"/api/readers/{reader_id}/reset", json={})

    async def reboot_reader(self, reader_id: str) -> Any:
        return await self._request("POST", f"/api/readers/{reader_id}/reboot", json={})

    async def reset_reader_antennas(self, reader_id: str) -> Any:
        return await self._request("POST", f"/api/readers/{reader_id}/antennas/reset", json={})

    # ---------- antennas ----------
    async def list_antennas(self) -> List[Dict[str, Any]]:
        return _as_list(await self._request("GET", "/api/antennas"))

    async def get_antenna(self, antenna_id: str) -> Dict[str, Any]:
        return _as_dict(await self._request("GET", f"/api/antennas/{antenna_id}"))

    async def reset_antenna(self, antenna_id: str) -> Any:
        return await self._request("POST", f"/api/antennas/{antenna_id}/reset", json={})

    async def update_antenna(self, antenna_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return _as_dict(await self._request("PUT", f"/api/antennas/{antenna_id}", json=body))


def _as_list(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, dict)]
    return []


def _as_dict(payload: Any) -> Dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


def _error_detail(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        msg = body.get("message") or body.get("detail") or body.get("error")
        if msg:
            return str(msg)
    return None
