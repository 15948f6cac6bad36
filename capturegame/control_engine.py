from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config_loader import get_busy_timeout_s, get_db_path, get_engine_cfg
from .db_schema import ensure_schema, now_ms, read_txn, to_iso_utc, write_txn
from .journal import EventHub
from .locks import KeyedLocks
from .models import (
    REASON_NO_ACTIVE_SESSION,
    REASON_NOT_KOTH,
    REASON_STATION_NOT_IN_SESSION,
    REASON_UNASSIGNED_BADGE,
    REASON_UNKNOWN_BADGE,
    GameType,
    KothScanResult,
    KothStatus,
    SessionStatus,
    StationState,
)
from .registry import (
    Registry,
    active_session_in,
    badge_in,
    session_in,
    station_in_session_in,
)

log = logging.getLogger("capture.koth")

Clock = Callable[[], int]


def held_seconds(start_ms: int, end_ms: int) -> int:
    """Whole seconds between two epoch-ms stamps; clock skew clamps to 0."""
    return max(0, (int(end_ms) - int(start_ms)) // 1000)


# ----------------------------- Control Engine -----------------------------
class ControlEngine:
    """
    King-of-the-Hill arbitration: decides who holds each station.

    Per-station critical section: a keyed mutex serializes scans at one station
    inside this process, and every read-modify-write runs in a BEGIN IMMEDIATE
    transaction so a second process can't interleave either. The partial UNIQUE
    index on station_control is the last line: two current holders for the
    same (station, session) can never be committed.
    """
    def __init__(self, config: dict, registry: Optional[Registry] = None,
                 hub: Optional[EventHub] = None, clock: Optional[Clock] = None):
        self.cfg = config or {}
        ecfg = get_engine_cfg(self.cfg)
        pcfg = ecfg.get("persistence", {}) or {}
        jcfg = ecfg.get("journal", {}) or {}

        self.db_path = str(get_db_path(self.cfg))
        self.timeout_s = get_busy_timeout_s(self.cfg)
        ensure_schema(Path(self.db_path), recreate=bool(pcfg.get("recreate_on_boot", False)))

        self.clock: Clock = clock or now_ms
        self.registry = registry or Registry(self.db_path, self.timeout_s, clock=self.clock)
        self.hub = hub or EventHub(self.db_path, enabled=bool(jcfg.get("enabled", True)),
                                   ring_size=int(jcfg.get("ring_size", 500)),
                                   timeout_s=self.timeout_s)
        self._locks = KeyedLocks(timeout_s=self.timeout_s)

        # called with session_id after a committed control change (reactive win check)
        self.after_change: Optional[Callable[[int], Any]] = None

    # ---------- scans ----------
    def handle_koth_scan(self, rfid_uid: str, station_id: str) -> KothScanResult:
        uid = str(rfid_uid or "").strip()
        station = str(station_id or "").strip()
        if not uid or not station:
            raise ValueError("rfid_uid and station_id are required")

        unknown_badge = False
        with self._locks.hold(("station", station)):
            with write_txn(self.db_path, self.timeout_s) as cx:
                session = active_session_in(cx)
                if session is None:
                    return self._ignored(station, None, REASON_NO_ACTIVE_SESSION)
                sid = int(session["session_id"])
                if session["game_type"] != GameType.KING_OF_THE_HILL.value:
                    return self._ignored(station, sid, REASON_NOT_KOTH)
                if not station_in_session_in(cx, sid, station):
                    return self._ignored(station, sid, REASON_STATION_NOT_IN_SESSION)

                badge = badge_in(cx, uid)
                if badge is None:
                    unknown_badge = True
                    result = self._ignored(station, sid, REASON_UNKNOWN_BADGE)
                elif badge["team_id"] is None:
                    result = self._ignored(station, sid, REASON_UNASSIGNED_BADGE)
                else:
                    result = self._arbitrate(cx, sid, station, int(badge["team_id"]))

        if unknown_badge:
            created = self.registry.ensure_badge(uid)
            result = result.model_copy(update={"badge_created": created})
        if result.status is KothStatus.CHANGED:
            self._announce(result)
        return result

    def _arbitrate(self, cx, session_id: int, station: str, team_id: int) -> KothScanResult:
        now = self.clock()
        cur = cx.execute(
            """SELECT control_id, team_id, controlled_at_ms FROM station_control
               WHERE station_id=? AND game_session_id=? AND is_current_control=1""",
            (station, session_id),
        ).fetchone()

        if cur is not None and int(cur["team_id"]) == team_id:
            # same holder: acknowledgment only
            return KothScanResult(status=KothStatus.UNCHANGED, station_id=station,
                                  session_id=session_id, team_id=team_id)

        old_team = None
        closed = None
        if cur is not None:
            old_team = int(cur["team_id"])
            closed = held_seconds(cur["controlled_at_ms"], now)
            cx.execute(
                """UPDATE station_control
                   SET is_current_control=0, control_duration_seconds=?, closed_at_ms=?
                   WHERE control_id=?""",
                (closed, now, cur["control_id"]),
            )

        cx.execute(
            """INSERT INTO station_control
               (station_id, game_session_id, team_id, controlled_at_ms,
                control_duration_seconds, is_current_control)
               VALUES(?,?,?,?,0,1)""",
            (station, session_id, team_id, now),
        )
        return KothScanResult(status=KothStatus.CHANGED, station_id=station,
                              session_id=session_id, team_id=team_id,
                              old_team_id=old_team, new_team_id=team_id,
                              closed_duration_seconds=closed)

    def _ignored(self, station: str, session_id: Optional[int], reason: str) -> KothScanResult:
        log.info("scan_ignored", extra={"station_id": station, "session_id": session_id,
                                        "reason": reason})
        return KothScanResult(status=KothStatus.IGNORED, station_id=station,
                              session_id=session_id, reason=reason)

    def _announce(self, result: KothScanResult) -> None:
        log.info(
            "control_changed station=%s old=%s new=%s held=%s",
            result.station_id, result.old_team_id, result.new_team_id,
            result.closed_duration_seconds,
        )
        self.hub.emit("control_changed", f"koth:{result.session_id}", {
            "session_id": result.session_id,
            "station_id": result.station_id,
            "old_team": result.old_team_id,
            "new_team": result.new_team_id,
            "closed_duration_seconds": result.closed_duration_seconds,
        })
        if self.after_change is not None and result.session_id is not None:
            try:
                self.after_change(result.session_id)
            except Exception:
                # the scan already committed; the periodic tick will retry the win check
                log.exception("after_change_failed", extra={"session_id": result.session_id})

    # ---------- session lifecycle ----------
    def stop_session(self, session_id: int) -> Dict[str, Any]:
        """
        Explicit stop: close every open control interval at `now` and mark the
        session completed. Re-stopping a completed session is a no-op.
        Scans already in flight see no active session afterwards and degrade
        to ignored acknowledgments.
        """
        closed: List[Dict[str, Any]] = []
        with write_txn(self.db_path, self.timeout_s) as cx:
            session = session_in(cx, session_id)
            if session is None:
                raise KeyError(f"session not found: {session_id}")
            if session["status"] == SessionStatus.COMPLETED.value:
                return session

            now = self.clock()
            rows = cx.execute(
                """SELECT control_id, station_id, team_id, controlled_at_ms FROM station_control
                   WHERE game_session_id=? AND is_current_control=1""",
                (int(session_id),),
            ).fetchall()
            for r in rows:
                dur = held_seconds(r["controlled_at_ms"], now)
                cx.execute(
                    """UPDATE station_control
                       SET is_current_control=0, control_duration_seconds=?, closed_at_ms=?
                       WHERE control_id=?""",
                    (dur, now, r["control_id"]),
                )
                closed.append({"station_id": r["station_id"], "team_id": r["team_id"],
                               "duration_seconds": dur})
            cx.execute(
                "UPDATE game_sessions SET status=?, end_ms=? WHERE session_id=?",
                (SessionStatus.COMPLETED.value, now, int(session_id)),
            )
            session = session_in(cx, session_id)

        log.info("session_stopped", extra={"session_id": session_id, "closed": len(closed)})
        self.hub.emit("session_stopped", f"koth:{session_id}",
                      {"session_id": int(session_id), "closed": closed,
                       "winner_team_id": session["winner_team_id"]})
        return session

    # ---------- views ----------
    def station_states(self, session_id: int) -> List[StationState]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            session = session_in(cx, session_id)
            if session is None:
                raise KeyError(f"session not found: {session_id}")
            ref = self.clock() if session["status"] == SessionStatus.ACTIVE.value \
                else int(session["end_ms"] or self.clock())
            rows = cx.execute(
                """SELECT gs.station_id, st.name, sc.team_id, sc.controlled_at_ms
                   FROM game_stations gs
                   LEFT JOIN stations st ON st.uuid = gs.station_id
                   LEFT JOIN station_control sc
                     ON sc.station_id = gs.station_id
                    AND sc.game_session_id = gs.session_id
                    AND sc.is_current_control = 1
                   WHERE gs.session_id = ?
                   ORDER BY st.name, gs.station_id""",
                (int(session_id),),
            ).fetchall()
        return [
            StationState(
                station_id=r["station_id"],
                name=r["name"],
                team_id=r["team_id"],
                controlled_at=to_iso_utc(r["controlled_at_ms"]),
                held_seconds=held_seconds(r["controlled_at_ms"], ref)
                if r["controlled_at_ms"] is not None else 0,
            )
            for r in rows
        ]

    def control_history(self, session_id: int, station_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = """SELECT control_id, station_id, team_id, controlled_at_ms, closed_at_ms,
                        control_duration_seconds, is_current_control
                 FROM station_control WHERE game_session_id=?"""
        params: list = [int(session_id)]
        if station_id:
            sql += " AND station_id=?"
            params.append(station_id.strip())
        sql += " ORDER BY controlled_at_ms, control_id"
        with read_txn(self.db_path, self.timeout_s) as cx:
            rows = cx.execute(sql, params).fetchall()
        return [{**dict(r), "is_current_control": bool(r["is_current_control"])} for r in rows]
