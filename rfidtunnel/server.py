from __future__ import annotations
"""
rfidtunnel/server.py
--------------------
FastAPI surface over one TunnelSession.

Groups
  - /health                     liveness
  - /tunnel/*                   gateway URL, reader selection and operations,
                                realtime connect/disconnect, read table, event log
  - /cases/*                    case list CRUD, expired flags, text export/import,
                                reconciliation report

Run:
    uvicorn rfidtunnel.server:app --host 127.0.0.1 --port 8000
"""

import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, field_validator

from .tunnel_session import TunnelSession, build_session

log = logging.getLogger("tunnel.server")

# ------------------------------------------------------------
# FastAPI app bootstrap
# ------------------------------------------------------------
app = FastAPI(title="RFID Tunnel", version="0.1.0")

SESSION: Optional[TunnelSession] = None


def get_session() -> TunnelSession:
    if SESSION is None:
        raise HTTPException(status_code=503, detail="tunnel session not started")
    return SESSION


@app.on_event("startup")
async def start_session() -> None:
    global SESSION
    if SESSION is None:
        SESSION = build_session()
    try:
        await SESSION.start()
        log.info("session_started", extra={"base_url": SESSION.gateway.base_url})
    except Exception:
        log.exception("Failed to start tunnel session")


@app.on_event("shutdown")
async def stop_session() -> None:
    if SESSION is not None:
        await SESSION.close()


# ------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------

class CaseIn(BaseModel):
    master_tag: str
    product_tags: List[str] = []

    @field_validator("master_tag")
    @classmethod
    def _require_master(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("master_tag must not be blank")
        return v


class ExpiredToggleIn(BaseModel):
    tag: str


class SimulatedIn(BaseModel):
    text: Optional[str] = None
    show: Optional[bool] = None


class BaseUrlIn(BaseModel):
    base_url: str


# ------------------------------------------------------------
# Health
# ------------------------------------------------------------

@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "service": "rfid-tunnel"}


# ------------------------------------------------------------
# Tunnel state and reads
# ------------------------------------------------------------

@app.get("/tunnel/state")
async def tunnel_state():
    return JSONResponse(get_session().snapshot())


@app.put("/tunnel/base_url")
async def tunnel_base_url(body: BaseUrlIn):
    s = get_session()
    base = await s.set_base_url(body.base_url)
    return {"ok": not s.error, "base_url": base, "error": s.error or None}


@app.get("/tunnel/reads")
async def tunnel_reads():
    return get_session().aggregator.snapshot()


@app.post("/tunnel/reads/clear")
async def tunnel_reads_clear():
    get_session().aggregator.clear_tags()
    return {"ok": True}


@app.get("/tunnel/events")
async def tunnel_events(limit: int = 50):
    agg = get_session().aggregator
    items = list(agg.events)[: max(0, int(limit))]
    return {"events_received": agg.events_received, "events": [e.as_dict() for e in items]}


@app.post("/tunnel/events/clear")
async def tunnel_events_clear():
    get_session().aggregator.clear()
    return {"ok": True}


@app.put("/tunnel/simulated")
async def tunnel_simulated(body: SimulatedIn):
    s = get_session()
    s.set_simulated(text=body.text, show=body.show)
    return {"show_simulated": s.show_simulated, "reads": s.effective_read_tags()}


# ------------------------------------------------------------
# Realtime channel and reader operations
# ------------------------------------------------------------

@app.post("/tunnel/connect")
async def tunnel_connect():
    s = get_session()
    s.connect_realtime()
    s.start_ui_refresh()
    return s.channel.status()


@app.post("/tunnel/disconnect")
async def tunnel_disconnect():
    s = get_session()
    s.disconnect_realtime()
    return s.channel.status()


@app.post("/tunnel/readers/{reader_id}/select")
async def tunnel_select_reader(reader_id: str):
    s = get_session()
    await s.select_reader(reader_id)
    return {"selected_reader_id": s.selected_reader_id, "reader_status": s.reader_status}


async def _reader_op(name: str) -> Dict[str, Any]:
    s = get_session()
    op = getattr(s, name)
    done = await op()
    if not done and s.error:
        raise HTTPException(status_code=502, detail=s.error)
    if not done:
        raise HTTPException(status_code=409, detail=f"{name} not allowed in the current reader state")
    return {"ok": True, "reader_status": s.reader_status}


@app.post("/tunnel/start")
async def tunnel_start():
    return await _reader_op("start_reading")


@app.post("/tunnel/stop")
async def tunnel_stop():
    return await _reader_op("stop_reading")


@app.post("/tunnel/reset")
async def tunnel_reset():
    return await _reader_op("reset_reader")


@app.post("/tunnel/reboot")
async def tunnel_reboot():
    return await _reader_op("reboot_reader")


@app.post("/tunnel/antennas/reset")
async def tunnel_antennas_reset():
    return await _reader_op("reset_antennas")


# ------------------------------------------------------------
# Cases
# ------------------------------------------------------------

@app.get("/cases")
async def cases_list():
    return {"cases": [c.as_dict() for c in get_session().cases.cases]}


@app.post("/cases", status_code=201)
async def cases_create(body: CaseIn):
    case = get_session().cases.add(body.master_tag, body.product_tags)
    return case.as_dict()


@app.delete("/cases/{case_id}")
async def cases_delete(case_id: str):
    if not get_session().cases.delete(case_id):
        raise HTTPException(status_code=404, detail=f"case {case_id} not found")
    return {"ok": True}


@app.post("/cases/{case_id}/expired")
async def cases_toggle_expired(case_id: str, body: ExpiredToggleIn):
    try:
        flag = get_session().cases.toggle_expired(case_id, body.tag)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if flag is None:
        raise HTTPException(status_code=404, detail=f"case {case_id} not found")
    return {"case_id": case_id, "tag": body.tag.strip(), "expired": flag}


@app.get("/cases/status")
async def cases_status():
    return get_session().case_report()


@app.get("/cases/export")
async def cases_export():
    text = get_session().cases.export_text()
    fname = f"cases_{dt.date.today().isoformat()}.txt"
    return PlainTextResponse(
        text,
        headers={"Content-Disposition": f'attachment; filename="{fname}"'},
    )


@app.post("/cases/import")
async def cases_import(req: Request):
    raw = await req.body()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="import must be UTF-8 text")
    loaded = get_session().cases.import_text(text)
    return {"ok": loaded > 0, "loaded": loaded, "cases": len(get_session().cases.cases)}


if __name__ == "__main__":
    import uvicorn

    from .config_loader import get_log_level, get_server_bind

    host, port = get_server_bind()
    uvicorn.run("rfidtunnel.server:app", host=host, port=port, log_level=get_log_level().lower())
