"""
manager.py – status broadcast + ops REST API
-------------------------------------------
Endpoints
---------
GET  /status          engine summary (pause flag, phase, risk, link, queues)
GET  /positions       tracker positions + live trailing states
GET  /parameters      current learned parameter table (+ version)
GET  /decisions       latest EnsembleDecision per instrument
POST /pause           operator kill switch (new entries blocked)
POST /resume          lift the kill switch
POST /session/reset   reset RiskState counters now
WS   /ws/status       push stream of decision / position / trailing changes

Consumers are read-only; a slow websocket client loses old messages,
it never slows the engine down.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from shared.logging import get_logger
from shared.models import EnsembleDecision, Position, TrailingState
from shared.utils import utcnow

if TYPE_CHECKING:
    from decision_service.decision_service import DecisionEngine

log = get_logger("trade_manager")


# ───── BROADCAST ───────────────────────────────────────────────────────
class StatusBroadcaster:
    def __init__(self, maxsize: int = 100):
        self._maxsize = maxsize
        self._subs: Set["asyncio.Queue[Dict[str, Any]]"] = set()
        self.latest: Dict[str, Dict[str, Any]] = {}
        self.dropped = 0

    def subscribe(self) -> "asyncio.Queue[Dict[str, Any]]":
        q: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=self._maxsize)
        self._subs.add(q)
        return q

    def unsubscribe(self, q: "asyncio.Queue[Dict[str, Any]]") -> None:
        self._subs.discard(q)

    @property
    def subscribers(self) -> int:
        return len(self._subs)

    def publish(self, instrument: str, *, decision: Optional[EnsembleDecision] = None,
                position: Optional[Position] = None,
                trailing: Optional[TrailingState] = None,
                trailing_closed: bool = False) -> Dict[str, Any]:
        view = self.latest.setdefault(instrument, {"decision": None, "position": None,
                                                   "trailing": None})
        if decision is not None:
            view["decision"] = decision.to_dict()
        if position is not None:
            view["position"] = position.to_dict()
        if trailing is not None:
            view["trailing"] = trailing.to_dict()
        if trailing_closed:
            view["trailing"] = None
        msg = {"type": "status", "instrument": instrument,
               "timestamp": utcnow().isoformat(), **view}
        for q in list(self._subs):
            if q.full():
                q.get_nowait()                # oldest goes first
                self.dropped += 1
            q.put_nowait(msg)
        return msg


# ───── REST API ─────────────────────────────────────────────────────────
def create_app(engine: "DecisionEngine") -> FastAPI:
    app = FastAPI(title="Decision Engine", docs_url=None, redoc_url=None)

    @app.get("/status")
    def status():
        cfg = engine.config.current
        params = engine.params.current
        return {
            "paused": cfg.paused,
            "config_version": cfg.version,
            "params_version": engine.params.version,
            "phase": params.phase,
            "min_confidence": params.min_confidence,
            "risk": engine.risk.current.to_dict(),
            "open_positions": engine.tracker.open_count(),
            "trailing": engine.trailing.active(),
            "venue_connected": engine.gateway.connected if engine.gateway else False,
            "dispatcher": dict(engine.dispatcher.stats),
            "queues": engine.queue_depths(),
            "subscribers": engine.broadcaster.subscribers,
        }

    @app.get("/positions")
    def positions():
        trails = engine.trailing.states()
        return [
            {**p.to_dict(), "trailing": trails[p.instrument].to_dict()
             if p.instrument in trails else None}
            for p in engine.tracker.positions()
        ]

    @app.get("/parameters")
    def parameters():
        return {"version": engine.params.version, **engine.params.current.to_dict()}

    @app.get("/decisions")
    def decisions():
        return {k: v.get("decision") for k, v in engine.broadcaster.latest.items()}

    @app.post("/pause")
    def pause():
        engine.set_paused(True, "manual REST call")
        return {"paused": True}

    @app.post("/resume")
    def resume():
        engine.set_paused(False)
        return {"paused": False}

    @app.post("/session/reset")
    def session_reset():
        return engine.risk.reset().to_dict()

    @app.websocket("/ws/status")
    async def ws_status(ws: WebSocket):
        await ws.accept()
        q = engine.broadcaster.subscribe()
        try:
            for inst, view in list(engine.broadcaster.latest.items()):
                await ws.send_json({"type": "status", "instrument": inst, **view})
            while True:
                await ws.send_json(await q.get())
        except WebSocketDisconnect:
            pass
        finally:
            engine.broadcaster.unsubscribe(q)

    return app
