from __future__ import annotations

"""
capturegame/server.py
---------------------
HTTP surface for the capture-the-station backend.

Ingest
  POST /api/rfid-scan          raw reader scan: logged, then routed to KOTH
  POST /api/station-control    King-of-the-Hill scan (no raw log)
  POST /api/sequence-scan      Sequence scan (idempotent on scan_id)

Game control
  POST /api/games, /api/sessions, /api/sessions/{id}/stop
  POST /api/sequence-games, /api/sequence-games/{id}/finish

Views
  standings, winner, station holders, sequence state, registry lists,
  recent scans, /events/recent, /events/stream (SSE)

Health checks
  /healthz: liveness (no DB access)
  /readyz: readiness (touches SQLite to confirm schema presence)

Engines are plain synchronous classes; endpoints are `def` so FastAPI runs
them in its threadpool, and the per-key locks + IMMEDIATE transactions inside
the engines do the serializing. A background task runs the standings tick and
the sequence time-limit check every `tick_s` seconds.

Run:  python -m capturegame.server
"""

import asyncio
import json
import logging
import sqlite3
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config_loader import (
    CONFIG,
    get_engine_cfg,
    get_feedback_cfg,
    get_log_level,
    get_sequence_defaults,
    get_server_bind,
)
from .control_engine import Clock, ControlEngine
from .db_schema import connect, to_iso_utc
from .feedback import OscStationOut
from .locks import LockTimeout
from .models import (
    BadgeAssignIn,
    GameIn,
    GameType,
    RfidScanIn,
    SequenceGameIn,
    SequenceScanIn,
    SessionStartIn,
    StationIn,
    TeamIn,
)
from .registry import SessionConflict
from .sequence_engine import SequenceEngine, build_game_config
from .standings import StandingsAggregator

log = logging.getLogger("capture.server")


def _call(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run an engine call and translate its exceptions into HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except HTTPException:
        raise
    except KeyError as ex:
        raise HTTPException(status_code=404, detail=str(ex.args[0]) if ex.args else "not found")
    except SessionConflict as ex:
        raise HTTPException(status_code=409, detail=str(ex))
    except LockTimeout as ex:
        raise HTTPException(status_code=503, detail=str(ex))
    except ValidationError as ex:
        raise HTTPException(status_code=422, detail=json.loads(ex.json()))
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))
    except Exception as ex:
        log.exception("request_failed", extra={"op": getattr(fn, "__name__", str(fn))})
        raise HTTPException(status_code=500, detail=f"{type(ex).__name__}: {ex}")


def _session_out(s: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if s is None:
        return None
    return {
        **s,
        "started_at": to_iso_utc(s.get("start_ms")),
        "ended_at": to_iso_utc(s.get("end_ms")),
        "won_at": to_iso_utc(s.get("won_ms")),
    }


def build_app(cfg: Optional[Dict[str, Any]] = None, clock: Optional[Clock] = None) -> FastAPI:
    cfg = CONFIG if cfg is None else cfg
    ecfg = get_engine_cfg(cfg)
    scfg = ecfg.get("standings", {}) or {}
    tick_s = max(0.1, float(scfg.get("tick_s", 1.0)))

    control = ControlEngine(cfg, clock=clock)
    registry, hub = control.registry, control.hub
    standings = StandingsAggregator(
        control.db_path, hub, clock=control.clock, timeout_s=control.timeout_s,
        stop_session_on_win=bool(scfg.get("stop_session_on_win", True)),
        close_session=control.stop_session,
    )
    control.after_change = standings.check_winner
    sequence = SequenceEngine(control.db_path, registry, hub, clock=control.clock,
                              timeout_s=control.timeout_s)
    osc_out = OscStationOut(get_feedback_cfg(cfg))
    hub.subscribe(osc_out.on_event)

    app = FastAPI(title="Capture Station Backend", version="0.3.0")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.state.control = control
    app.state.standings = standings
    app.state.sequence = sequence
    app.state.registry = registry
    app.state.hub = hub
    app.state.osc_out = osc_out

    background: set[asyncio.Task] = set()

    async def _ticker() -> None:
        while True:
            try:
                await asyncio.to_thread(standings.tick)
                await asyncio.to_thread(sequence.expire_due_games)
            except Exception:
                # next tick retries; a single failed evaluation must not stop the loop
                log.exception("tick_failed")
            await asyncio.sleep(tick_s)

    @app.on_event("startup")
    async def start_background() -> None:
        log.info("db_path=%s", control.db_path)
        osc_out.start()
        if osc_out.enabled:
            log.info("OSC OUT -> %s:%s%s", osc_out.host, osc_out.port, osc_out.prefix)
        t = asyncio.create_task(_ticker())
        background.add(t)
        t.add_done_callback(background.discard)

    @app.on_event("shutdown")
    async def stop_background() -> None:
        tasks = list(background)
        for t in tasks:
            t.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for res in results:
            if isinstance(res, Exception) and not isinstance(res, asyncio.CancelledError):
                log.warning("Background task ended with exception during shutdown: %r", res)
        osc_out.stop()

    # ------------------------------------------------------------
    # Scan ingestion
    # ------------------------------------------------------------
    @app.post("/api/rfid-scan")
    def rfid_scan(body: RfidScanIn):
        session = _call(registry.record_scan, body.rfid_uid, body.station_id)
        control_result = None
        if session is not None and session["game_type"] == GameType.KING_OF_THE_HILL.value:
            control_result = _call(control.handle_koth_scan, body.rfid_uid, body.station_id)
        badge_created = registry.ensure_badge(body.rfid_uid) or bool(
            control_result and control_result.badge_created)
        return {
            "ok": True,
            "session_id": session["session_id"] if session else None,
            "game_type": session["game_type"] if session else None,
            "badge_created": badge_created,
            "control": control_result.model_dump(mode="json") if control_result else None,
        }

    @app.post("/api/station-control")
    def station_control(body: RfidScanIn):
        result = _call(control.handle_koth_scan, body.rfid_uid, body.station_id)
        return result.model_dump(mode="json")

    @app.post("/api/sequence-scan")
    def sequence_scan(body: SequenceScanIn):
        # stored JSON goes back verbatim so a retried scan_id gets identical bytes
        text = _call(sequence.process_scan, body.scan_id, body.game_id, body.station_id, body.rfid_uid)
        return Response(content=text, media_type="application/json")

    # ------------------------------------------------------------
    # KOTH games & sessions
    # ------------------------------------------------------------
    @app.post("/api/games")
    def create_game(body: GameIn):
        return _call(registry.create_game, body.name, GameType.KING_OF_THE_HILL,
                     int(round(body.control_minutes_to_win * 60)))

    @app.get("/api/sessions/active")
    def active_session():
        s = _call(registry.active_session)
        if s is None:
            return {"session": None, "station_ids": []}
        return {"session": _session_out(s),
                "station_ids": sorted(_call(registry.stations_in_session, s["session_id"]))}

    @app.post("/api/sessions")
    def start_session(body: SessionStartIn):
        s = _call(registry.start_session, body.game_id, body.station_ids)
        hub.emit("session_started", f"koth:{s['session_id']}",
                 {"session_id": s["session_id"], "game_id": s["game_id"]})
        return _session_out(s)

    @app.post("/api/sessions/{session_id}/stop")
    def stop_session(session_id: int):
        game_id = _call(sequence.game_for_session, session_id)
        if game_id is not None:
            # sequence games release their session slot through the engine
            _call(sequence.finish_sequence_game, game_id, "stopped")
            return _session_out(_call(registry.get_session, session_id))
        return _session_out(_call(control.stop_session, session_id))

    @app.get("/api/sessions/{session_id}/standings")
    def session_standings(session_id: int):
        rows = _call(standings.compute_team_standings, session_id)
        return {"session_id": session_id,
                "standings": [r.model_dump() for r in rows]}

    @app.get("/api/sessions/{session_id}/winner")
    def session_winner(session_id: int):
        return {"session_id": session_id, "winner": _call(standings.check_winner, session_id)}

    @app.get("/api/sessions/{session_id}/stations")
    def session_stations(session_id: int):
        rows = _call(control.station_states, session_id)
        return {"session_id": session_id, "stations": [r.model_dump() for r in rows]}

    @app.get("/api/sessions/{session_id}/history")
    def session_history(session_id: int, station_id: Optional[str] = None):
        _call(registry.get_session, session_id)
        return {"session_id": session_id,
                "intervals": _call(control.control_history, session_id, station_id)}

    # ------------------------------------------------------------
    # Sequence games
    # ------------------------------------------------------------
    @app.post("/api/sequence-games")
    def start_sequence_game(body: SequenceGameIn):
        game_cfg = _call(build_game_config, body, get_sequence_defaults(cfg))
        return _call(sequence.start_sequence_game, game_cfg)

    @app.get("/api/sequence-games/{game_id}")
    def sequence_state(game_id: str):
        return _call(sequence.sequence_state, game_id)

    @app.post("/api/sequence-games/{game_id}/finish")
    def finish_sequence_game(game_id: str):
        return _call(sequence.finish_sequence_game, game_id, "stopped")

    # ------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------
    @app.get("/api/teams")
    def list_teams():
        return {"teams": _call(registry.list_teams)}

    @app.post("/api/teams")
    def create_team(body: TeamIn):
        return _call(registry.create_team, body.name, body.color)

    @app.get("/api/stations")
    def list_stations(active_only: bool = False):
        return {"stations": _call(registry.list_stations, active_only)}

    @app.post("/api/stations")
    def upsert_station(body: StationIn):
        return _call(registry.upsert_station, body.uuid, body.name, body.location, body.is_active)

    @app.get("/api/badges")
    def list_badges():
        return {"badges": _call(registry.list_badges)}

    @app.get("/api/badges/unassigned")
    def list_unassigned_badges():
        return {"badges": _call(registry.list_badges, True)}

    @app.post("/api/badges/assign")
    def assign_badge(body: BadgeAssignIn):
        return _call(registry.assign_badge, body.rfid_uid, body.team_id, body.player_name)

    @app.get("/api/scans/recent")
    def recent_scans(limit: int = 50):
        return {"scans": _call(registry.recent_scans, limit)}

    # ------------------------------------------------------------
    # Events: ring buffer + SSE
    # ------------------------------------------------------------
    @app.get("/events/recent")
    def events_recent(limit: int = 50, type: Optional[str] = None):
        return {"events": hub.recent(limit, type)}

    @app.get("/events/stream")
    async def events_stream(request: Request):
        """EventSource feed of every engine event (control changes, wins, sequence broadcasts)."""
        loop = asyncio.get_running_loop()
        q: asyncio.Queue = asyncio.Queue(maxsize=1024)

        def _offer(ev: Dict[str, Any]) -> None:
            if q.full():
                q.get_nowait()   # slow consumer: drop the oldest
            q.put_nowait(ev)

        def _forward(ev: Dict[str, Any]) -> None:
            # engines emit from worker threads
            loop.call_soon_threadsafe(_offer, ev)

        hub.subscribe(_forward)

        async def gen():
            try:
                yield b'data: {"type":"hello"}\n\n'
                while not await request.is_disconnected():
                    try:
                        ev = await asyncio.wait_for(q.get(), timeout=15.0)
                    except asyncio.TimeoutError:
                        yield b": keepalive\n\n"
                        continue
                    yield f"event: {ev['type']}\ndata: {json.dumps(ev, separators=(',', ':'), default=str)}\n\n".encode()
            finally:
                hub.unsubscribe(_forward)

        return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})

    # ------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------
    @app.get("/healthz")
    def healthz():
        """Liveness: the app is up and able to serve. Does not touch the database."""
        return {"status": "ok", "service": "capture-backend"}

    @app.get("/readyz")
    def readyz():
        """Readiness: DB reachable and schema present; 503 otherwise."""
        try:
            cx = connect(control.db_path, control.timeout_s)
            try:
                cx.execute("SELECT 1 FROM station_control LIMIT 1")
                cx.execute("SELECT 1 FROM sequence_scans LIMIT 1")
            finally:
                cx.close()
            return {"status": "ok", "db_path": control.db_path}
        except sqlite3.Error as e:
            return Response(
                content=json.dumps({"status": "degraded", "error": type(e).__name__}),
                media_type="application/json",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host, port = get_server_bind()
    uvicorn.run("capturegame.server:build_app", factory=True, host=host, port=port)
