"""
capturegame/sequence_engine.py
------------------------------
Sequence Progress Engine: per-(game, team) progress through a station sequence.

Modes
-----
ORDERED  stations must be completed in `sequence` order; a station may need
         several scans (`multi_scan`) before it counts. Wrong stations apply the
         configured penalty. When `time_window_sec` is set, each completion opens
         a deadline for the next station; missing it resets the team to the start.
FREE     any order; each station counts once; points = stations visited.
         Stations outside `sequence` answer WRONG_ORDER and never count.

Defender locks
--------------
When a team completes a station and `defender_reset.cooldown_sec` > 0, a lock is
written for (game, station): other teams scanning it before `locked_until` get
DEFENDER_LOCK and nothing changes.
  lock_current  locks the station just completed
  lock_last     locks the station the team completed before this one

Idempotency
-----------
Every processed scan stores its serialized response under the client's scan_id
(PRIMARY KEY). The lookup and the insert happen in the same BEGIN IMMEDIATE
transaction, so a retried delivery returns the stored bytes and mutates nothing.
"""

from __future__ import annotations
import copy
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .control_engine import Clock
from .db_schema import now_ms, read_txn, to_iso_utc, write_txn
from .feedback import station_feedback
from .journal import EventHub
from .locks import KeyedLocks
from .models import (
    REASON_GAME_OVER,
    REASON_UNASSIGNED_BADGE,
    REASON_UNKNOWN_BADGE,
    REASON_UNKNOWN_GAME,
    Broadcast,
    GameType,
    LockMode,
    Outcome,
    PenaltyType,
    ProgressMeta,
    ScanResponse,
    SequenceGameConfig,
    SequenceGameIn,
    SequenceMode,
    SessionStatus,
    TeamProgress,
    WinRuleType,
)
from .registry import Registry, SessionConflict, active_session_in, badge_in

log = logging.getLogger("capture.sequence")


# ----------------------------- Progress state -----------------------------
@dataclass
class Progress:
    game_id: str
    team_id: int
    idx: int = 0
    points: int = 0
    window_expires_at_ms: Optional[int] = None
    last_update_ms: int = 0
    visited: List[str] = field(default_factory=list)
    streak_count: int = 0
    last_completed: Optional[str] = None

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "Progress":
        meta = json.loads(r["meta_json"] or "{}")
        return cls(
            game_id=r["game_id"],
            team_id=int(r["team_id"]),
            idx=int(r["idx"]),
            points=int(r["points"]),
            window_expires_at_ms=r["window_expires_at_ms"],
            last_update_ms=int(r["last_update_ms"]),
            visited=list(meta.get("visited") or []),
            streak_count=int(meta.get("streak_count") or 0),
            last_completed=meta.get("last_completed"),
        )

    def meta_json(self) -> str:
        return json.dumps({"visited": self.visited, "streak_count": self.streak_count,
                           "last_completed": self.last_completed})

    def to_model(self) -> TeamProgress:
        return TeamProgress(
            game_id=self.game_id,
            team_id=self.team_id,
            idx=self.idx,
            points=self.points,
            window_expires_at=to_iso_utc(self.window_expires_at_ms),
            last_update=to_iso_utc(self.last_update_ms),
            meta=ProgressMeta(visited=list(self.visited), streak_count=self.streak_count,
                              last_completed=self.last_completed),
        )


# ----------------------------- Transitions -----------------------------
def apply_ordered(cfg: SequenceGameConfig, station_id: str, p: Progress,
                  now: int) -> Tuple[Outcome, Optional[str]]:
    """Mutates p; returns (outcome, station completed by this scan or None)."""
    if p.idx >= len(cfg.sequence):
        return Outcome.ALREADY_DONE, None

    if p.window_expires_at_ms is not None and now > p.window_expires_at_ms:
        log.info("window_expired", extra={"game_id": p.game_id, "team_id": p.team_id,
                                          "idx": p.idx})
        p.idx = 0
        p.points = 0
        p.streak_count = 0
        p.window_expires_at_ms = None

    target = cfg.sequence[p.idx]
    if station_id != target:
        penalty = cfg.wrong_scan_penalty
        if penalty.type is PenaltyType.RESET_TO_ZERO:
            p.idx = 0
            p.points = 0
            p.streak_count = 0
            p.window_expires_at_ms = None
        elif penalty.type is PenaltyType.TIME_PENALTY:
            if p.window_expires_at_ms is not None:
                p.window_expires_at_ms -= int(penalty.seconds) * 1000
        return Outcome.WRONG_ORDER, None

    p.streak_count += 1
    if p.streak_count < cfg.scans_needed(station_id):
        return Outcome.HOLDING, None

    p.idx += 1
    p.points = p.idx
    p.streak_count = 0
    if cfg.time_window_sec and p.idx < len(cfg.sequence):
        p.window_expires_at_ms = now + int(cfg.time_window_sec) * 1000
    else:
        p.window_expires_at_ms = None
    return Outcome.PROGRESS, station_id


def apply_free(cfg: SequenceGameConfig, station_id: str, p: Progress,
               now: int) -> Tuple[Outcome, Optional[str]]:
    if station_id not in cfg.sequence:
        # not one of this game's stations; FREE has no position to penalize
        return Outcome.WRONG_ORDER, None
    if station_id in p.visited:
        return Outcome.ALREADY_DONE, None
    p.visited.append(station_id)
    p.points = len(set(p.visited) & set(cfg.sequence))
    return Outcome.PROGRESS, station_id


def is_finished(cfg: SequenceGameConfig, p: Progress) -> bool:
    if cfg.mode is SequenceMode.ORDERED:
        return p.idx >= len(cfg.sequence)
    return set(cfg.sequence) <= set(p.visited)


def _close_session_in(cx: sqlite3.Connection, session_id: Optional[int],
                      winner_id: Optional[int], now: int) -> None:
    """Release the active session slot held by a sequence game."""
    if session_id is None:
        return
    cx.execute(
        """UPDATE game_sessions
           SET status=?, end_ms=COALESCE(end_ms, ?),
               winner_team_id=COALESCE(winner_team_id, ?),
               won_ms=CASE WHEN winner_team_id IS NULL AND ? IS NOT NULL THEN ? ELSE won_ms END
           WHERE session_id=?""",
        (SessionStatus.COMPLETED.value, now, winner_id, winner_id, now, int(session_id)),
    )


def build_game_config(req: Union[SequenceGameIn, Dict[str, Any]],
                      defaults: Optional[Dict[str, Any]] = None) -> SequenceGameConfig:
    """Layer an (often partial) request over sequence.defaults and validate."""
    if isinstance(req, dict):
        req = SequenceGameIn.model_validate(req)
    merged = copy.deepcopy(defaults or {})
    explicit = req.model_dump(mode="json", exclude_unset=True)
    # an explicit null only means something for the window (disable it)
    merged.update({k: v for k, v in explicit.items() if v is not None or k == "time_window_sec"})
    return SequenceGameConfig.model_validate(merged)


# ----------------------------- Engine -----------------------------
class SequenceEngine:
    def __init__(self, db_path: str, registry: Registry, hub: EventHub,
                 clock: Optional[Clock] = None, timeout_s: float = 5.0):
        self.db_path = str(db_path)
        self.registry = registry
        self.hub = hub
        self.clock: Clock = clock or now_ms
        self.timeout_s = timeout_s
        self._locks = KeyedLocks(timeout_s=timeout_s)

    # ---------- lifecycle ----------
    def start_sequence_game(self, config: SequenceGameConfig) -> Dict[str, Any]:
        """
        Open a sequence game. It takes the system-wide active game_sessions
        slot (a `sequence` game row + session), so it cannot start while a KOTH
        session or another sequence game is running.
        """
        now = self.clock()
        with write_txn(self.db_path, self.timeout_s) as cx:
            if cx.execute("SELECT 1 FROM sequence_games WHERE game_id=?", (config.game_id,)).fetchone():
                raise SessionConflict(f"sequence game already exists: {config.game_id}")
            if active_session_in(cx) is not None:
                raise SessionConflict("another game session is already active")
            game_row = cx.execute(
                """INSERT INTO games(name, type, control_seconds_to_win, config_json, created_ms)
                   VALUES(?,?,0,?,?)""",
                (config.game_id, GameType.SEQUENCE.value, config.model_dump_json(), now),
            ).lastrowid
            session_id = cx.execute(
                "INSERT INTO game_sessions(game_id, status, start_ms) VALUES(?,?,?)",
                (game_row, SessionStatus.ACTIVE.value, now),
            ).lastrowid
            cx.executemany(
                "INSERT INTO game_stations(session_id, station_id) VALUES(?,?)",
                [(session_id, st) for st in config.sequence],
            )
            cx.execute(
                """INSERT INTO sequence_games(game_id, session_id, config_json, status, started_ms)
                   VALUES(?,?,?,?,?)""",
                (config.game_id, session_id, config.model_dump_json(), "active", now),
            )
        log.info("sequence_started", extra={"game_id": config.game_id, "session_id": session_id,
                                            "mode": config.mode.value, "stations": len(config.sequence)})
        self.hub.emit("sequence_started", f"sequence:{config.game_id}",
                      {"game_id": config.game_id, "config": config.model_dump(mode="json")})
        return self.sequence_state(config.game_id)

    def finish_sequence_game(self, game_id: str, reason: str = "stopped") -> Dict[str, Any]:
        """
        End a game. Under most_points_when_time_ends the winner is the team with
        the most points (ties: earliest last_update, then lowest team_id).
        Finishing a completed game changes nothing.
        """
        winner_id = None
        finished = False
        with write_txn(self.db_path, self.timeout_s) as cx:
            row = cx.execute(
                "SELECT config_json, status, winner_team_id, session_id FROM sequence_games WHERE game_id=?",
                (game_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"sequence game not found: {game_id}")
            if row["status"] == "active":
                cfg = SequenceGameConfig.model_validate_json(row["config_json"])
                winner_id = row["winner_team_id"]
                if winner_id is None and cfg.win_rule.type is WinRuleType.MOST_POINTS_WHEN_TIME_ENDS:
                    best = cx.execute(
                        """SELECT team_id FROM sequence_team_progress
                           WHERE game_id=? AND points > 0
                           ORDER BY points DESC, last_update_ms ASC, team_id ASC LIMIT 1""",
                        (game_id,),
                    ).fetchone()
                    winner_id = int(best["team_id"]) if best else None
                now = self.clock()
                cx.execute(
                    "UPDATE sequence_games SET status='completed', ended_ms=?, winner_team_id=? WHERE game_id=?",
                    (now, winner_id, game_id),
                )
                _close_session_in(cx, row["session_id"], winner_id, now)
                finished = True

        if finished:
            log.info("sequence_finished", extra={"game_id": game_id, "reason": reason,
                                                 "winner_team_id": winner_id})
            if winner_id is not None:
                self.hub.emit("game_won", f"sequence:{game_id}",
                              {"game_id": game_id, "team_id": winner_id, "reason": reason})
            self.hub.emit("sequence_finished", f"sequence:{game_id}",
                          {"game_id": game_id, "winner_team_id": winner_id, "reason": reason})
        return self.sequence_state(game_id)

    def expire_due_games(self) -> List[str]:
        """Finish every active game whose max_duration_sec has elapsed."""
        now = self.clock()
        with read_txn(self.db_path, self.timeout_s) as cx:
            rows = cx.execute(
                "SELECT game_id, config_json, started_ms FROM sequence_games WHERE status='active'"
            ).fetchall()
        due = []
        for r in rows:
            cfg = SequenceGameConfig.model_validate_json(r["config_json"])
            if now >= int(r["started_ms"]) + cfg.max_duration_sec * 1000:
                due.append(r["game_id"])
        for game_id in due:
            self.finish_sequence_game(game_id, reason="time_up")
        return due

    def game_for_session(self, session_id: int) -> Optional[str]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            r = cx.execute("SELECT game_id FROM sequence_games WHERE session_id=?",
                           (int(session_id),)).fetchone()
        return r["game_id"] if r is not None else None

    def sequence_state(self, game_id: str) -> Dict[str, Any]:
        now = self.clock()
        with read_txn(self.db_path, self.timeout_s) as cx:
            g = cx.execute("SELECT * FROM sequence_games WHERE game_id=?", (game_id,)).fetchone()
            if g is None:
                raise KeyError(f"sequence game not found: {game_id}")
            progress = [Progress.from_row(r) for r in cx.execute(
                "SELECT * FROM sequence_team_progress WHERE game_id=? ORDER BY team_id", (game_id,))]
            locks = cx.execute(
                """SELECT station_id, locked_by_team, locked_until_ms FROM sequence_station_locks
                   WHERE game_id=? AND locked_until_ms > ? ORDER BY station_id""",
                (game_id, now),
            ).fetchall()
        cfg = SequenceGameConfig.model_validate_json(g["config_json"])
        return {
            "game_id": game_id,
            "session_id": g["session_id"],
            "status": g["status"],
            "started_at": to_iso_utc(g["started_ms"]),
            "ended_at": to_iso_utc(g["ended_ms"]),
            "remaining_s": max(0, (int(g["started_ms"]) + cfg.max_duration_sec * 1000 - now) // 1000)
            if g["status"] == "active" else 0,
            "winner_team_id": g["winner_team_id"],
            "config": cfg.model_dump(mode="json"),
            "teams": [p.to_model().model_dump(mode="json") for p in progress],
            "locks": [{"station_id": r["station_id"], "locked_by_team": r["locked_by_team"],
                       "locked_until": to_iso_utc(r["locked_until_ms"])} for r in locks],
        }

    # ---------- scans ----------
    def handle_sequence_scan(self, scan_id: str, game_id: str, station_id: str,
                             rfid_uid: str) -> ScanResponse:
        return ScanResponse.model_validate_json(
            self.process_scan(scan_id, game_id, station_id, rfid_uid))

    def process_scan(self, scan_id: str, game_id: str, station_id: str, rfid_uid: str) -> str:
        """Same as handle_sequence_scan but returns the stored JSON text verbatim."""
        scan_id, game_id, station_id, rfid_uid = (str(v or "").strip()
                                                  for v in (scan_id, game_id, station_id, rfid_uid))
        if not (scan_id and game_id and station_id and rfid_uid):
            raise ValueError("scan_id, game_id, station_id and rfid_uid are required")

        with read_txn(self.db_path, self.timeout_s) as cx:
            cached = self._cached(cx, scan_id)
            badge = badge_in(cx, rfid_uid)
        if cached is not None:
            log.info("scan_replayed", extra={"scan_id": scan_id})
            return cached

        team_key = badge["team_id"] if badge else None
        events: List[Tuple[str, Dict[str, Any]]] = []
        with self._locks.hold(("sequence", game_id, team_key)):
            with write_txn(self.db_path, self.timeout_s) as cx:
                cached = self._cached(cx, scan_id)
                if cached is not None:
                    log.info("scan_replayed", extra={"scan_id": scan_id})
                    return cached
                resp = self._evaluate(cx, game_id, station_id, rfid_uid, events)
                body = resp.model_dump_json()
                cx.execute(
                    """INSERT INTO sequence_scans
                       (scan_id, game_id, station_id, rfid_uid, team_id, outcome, ts_ms, response_json)
                       VALUES(?,?,?,?,?,?,?,?)""",
                    (scan_id, game_id, station_id, rfid_uid, resp.team_id, resp.event.value,
                     self.clock(), body),
                )

        if resp.reason == REASON_UNKNOWN_BADGE:
            self.registry.ensure_badge(rfid_uid)
        log.info("sequence_scan team=%s station=%s outcome=%s", resp.team_id, station_id,
                 resp.event.value)
        self.hub.emit("sequence_scan", f"sequence:{game_id}", {
            "game_id": game_id,
            "scan_id": scan_id,
            "station_id": station_id,
            "team_id": resp.team_id,
            "outcome": resp.event.value,
            "station_feedback": resp.station_feedback.model_dump(),
            "broadcast": resp.broadcast.model_dump(mode="json") if resp.broadcast else None,
        })
        for type_, payload in events:
            self.hub.emit(type_, f"sequence:{game_id}", payload)
        return body

    @staticmethod
    def _cached(cx: sqlite3.Connection, scan_id: str) -> Optional[str]:
        r = cx.execute("SELECT response_json FROM sequence_scans WHERE scan_id=?", (scan_id,)).fetchone()
        return r["response_json"] if r is not None else None

    def _ignored(self, team_id: Optional[int], reason: str,
                 progress: Optional[Progress] = None) -> ScanResponse:
        log.info("scan_ignored", extra={"team_id": team_id, "reason": reason})
        return ScanResponse(
            ok=False,
            team_id=team_id,
            event=Outcome.IGNORED,
            team_progress=progress.to_model() if progress else None,
            station_feedback=station_feedback(Outcome.IGNORED),
            reason=reason,
        )

    def _evaluate(self, cx: sqlite3.Connection, game_id: str, station_id: str, rfid_uid: str,
                  events: List[Tuple[str, Dict[str, Any]]]) -> ScanResponse:
        now = self.clock()
        g = cx.execute(
            """SELECT sg.config_json, sg.status, sg.started_ms, sg.winner_team_id, sg.session_id,
                      gs.status AS session_status
               FROM sequence_games sg LEFT JOIN game_sessions gs ON gs.session_id = sg.session_id
               WHERE sg.game_id=?""",
            (game_id,),
        ).fetchone()
        badge = badge_in(cx, rfid_uid)
        team_id = int(badge["team_id"]) if badge and badge["team_id"] is not None else None

        if g is None:
            return self._ignored(team_id, REASON_UNKNOWN_GAME)
        cfg = SequenceGameConfig.model_validate_json(g["config_json"])
        # a session stopped from the operator side ends the game too
        session_closed = g["session_status"] is not None and g["session_status"] != SessionStatus.ACTIVE.value
        if (g["status"] != "active" or g["winner_team_id"] is not None or session_closed
                or now >= int(g["started_ms"]) + cfg.max_duration_sec * 1000):
            return self._ignored(team_id, REASON_GAME_OVER)
        if badge is None:
            return self._ignored(None, REASON_UNKNOWN_BADGE)
        if team_id is None:
            return self._ignored(None, REASON_UNASSIGNED_BADGE)

        progress = self._load_progress(cx, game_id, team_id, now)

        lock = cx.execute(
            """SELECT locked_by_team, locked_until_ms FROM sequence_station_locks
               WHERE game_id=? AND station_id=? AND locked_until_ms > ?""",
            (game_id, station_id, now),
        ).fetchone()
        if lock is not None and int(lock["locked_by_team"]) != team_id:
            return ScanResponse(
                ok=True,
                team_id=team_id,
                event=Outcome.DEFENDER_LOCK,
                team_progress=progress.to_model(),
                station_feedback=station_feedback(Outcome.DEFENDER_LOCK),
            )

        if cfg.mode is SequenceMode.ORDERED:
            outcome, completed = apply_ordered(cfg, station_id, progress, now)
        else:
            outcome, completed = apply_free(cfg, station_id, progress, now)

        if completed is not None:
            self._write_defender_lock(cx, cfg, progress, completed, now)
            progress.last_completed = completed

        if cfg.win_rule.type is WinRuleType.FIRST_TO_FINISH and is_finished(cfg, progress):
            cur = cx.execute(
                """UPDATE sequence_games SET winner_team_id=?, status='completed', ended_ms=?
                   WHERE game_id=? AND winner_team_id IS NULL""",
                (team_id, now, game_id),
            )
            if cur.rowcount == 1:
                _close_session_in(cx, g["session_id"], team_id, now)
                outcome = Outcome.WIN
                events.append(("game_won", {"game_id": game_id, "team_id": team_id,
                                            "team_name": badge["team_name"], "reason": "first_to_finish"}))

        progress.last_update_ms = now
        cx.execute(
            """UPDATE sequence_team_progress
               SET idx=?, points=?, window_expires_at_ms=?, last_update_ms=?, meta_json=?
               WHERE game_id=? AND team_id=?""",
            (progress.idx, progress.points, progress.window_expires_at_ms, progress.last_update_ms,
             progress.meta_json(), game_id, team_id),
        )

        model = progress.to_model()
        return ScanResponse(
            ok=True,
            team_id=team_id,
            event=outcome,
            team_progress=model,
            station_feedback=station_feedback(outcome),
            broadcast=Broadcast(type="state_update", payload={
                "team_id": team_id,
                "station_id": station_id,
                "outcome": outcome.value,
                "progress": model.model_dump(mode="json"),
            }),
        )

    def _load_progress(self, cx: sqlite3.Connection, game_id: str, team_id: int, now: int) -> Progress:
        r = cx.execute("SELECT * FROM sequence_team_progress WHERE game_id=? AND team_id=?",
                       (game_id, team_id)).fetchone()
        if r is not None:
            return Progress.from_row(r)
        p = Progress(game_id=game_id, team_id=team_id, last_update_ms=now)
        cx.execute(
            """INSERT INTO sequence_team_progress
               (game_id, team_id, idx, points, window_expires_at_ms, last_update_ms, meta_json)
               VALUES(?,?,0,0,NULL,?,?)""",
            (game_id, team_id, now, p.meta_json()),
        )
        return p

    def _write_defender_lock(self, cx: sqlite3.Connection, cfg: SequenceGameConfig,
                             p: Progress, completed: str, now: int) -> None:
        cooldown = int(cfg.defender_reset.cooldown_sec)
        if cooldown <= 0:
            return
        if cfg.defender_reset.mode is LockMode.LOCK_CURRENT:
            target = completed
        else:
            target = p.last_completed
        if not target:
            return
        cx.execute(
            """INSERT INTO sequence_station_locks(game_id, station_id, locked_by_team, locked_until_ms)
               VALUES(?,?,?,?)
               ON CONFLICT(game_id, station_id) DO UPDATE SET
                 locked_by_team=excluded.locked_by_team, locked_until_ms=excluded.locked_until_ms""",
            (p.game_id, target, p.team_id, now + cooldown * 1000),
        )
