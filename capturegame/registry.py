"""
capturegame/registry.py
-----------------------
Badge / Station / Team registry and the game-session repository.

The engines treat this as their external collaborator:
  - resolve_team_for_tag(rfid_uid) -> team_id | None
  - active_session()               -> dict | None
  - stations_in_session(session_id) -> set[str]

Each public method opens its own connection. The `*_in(cx, ...)` variants run
inside a caller's transaction so an engine can check membership and mutate
control rows against one consistent view.
"""

from __future__ import annotations
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .db_schema import connect, now_ms, read_txn, write_txn
from .models import GameType, SessionStatus

log = logging.getLogger("capture.registry")


class SessionConflict(RuntimeError):
    """Raised when a lifecycle change would violate a uniqueness rule."""


def _row(r: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(r) if r is not None else None


# ---------- transaction-scoped lookups ----------
def active_session_in(cx: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    r = cx.execute(
        """SELECT s.session_id, s.game_id, s.status, s.start_ms, s.end_ms,
                  s.winner_team_id, s.won_ms,
                  g.type AS game_type, g.name AS game_name, g.control_seconds_to_win
           FROM game_sessions s JOIN games g ON g.game_id = s.game_id
           WHERE s.status = 'active'
           LIMIT 1"""
    ).fetchone()
    return _row(r)


def session_in(cx: sqlite3.Connection, session_id: int) -> Optional[Dict[str, Any]]:
    r = cx.execute(
        """SELECT s.session_id, s.game_id, s.status, s.start_ms, s.end_ms,
                  s.winner_team_id, s.won_ms,
                  g.type AS game_type, g.name AS game_name, g.control_seconds_to_win
           FROM game_sessions s JOIN games g ON g.game_id = s.game_id
           WHERE s.session_id = ?""",
        (int(session_id),),
    ).fetchone()
    return _row(r)


def station_in_session_in(cx: sqlite3.Connection, session_id: int, station_id: str) -> bool:
    r = cx.execute(
        "SELECT 1 FROM game_stations WHERE session_id=? AND station_id=?",
        (int(session_id), station_id),
    ).fetchone()
    return r is not None


def badge_in(cx: sqlite3.Connection, rfid_uid: str) -> Optional[Dict[str, Any]]:
    r = cx.execute(
        """SELECT b.badge_id, b.rfid_uid, b.label, b.player_name, b.team_id,
                  t.name AS team_name, t.color AS team_color
           FROM badges b LEFT JOIN teams t ON t.team_id = b.team_id
           WHERE b.rfid_uid = ?""",
        (rfid_uid,),
    ).fetchone()
    return _row(r)


# ---------- registry ----------
class Registry:
    def __init__(self, db_path: str | Path, timeout_s: float = 5.0,
                 clock: Optional[Callable[[], int]] = None):
        self.db_path = str(db_path)
        self.timeout_s = timeout_s
        self.clock = clock or now_ms

    # ---------- teams ----------
    def create_team(self, name: str, color: str = "#00ffff") -> Dict[str, Any]:
        try:
            with write_txn(self.db_path, self.timeout_s) as cx:
                cur = cx.execute(
                    "INSERT INTO teams(name, color, created_ms) VALUES(?,?,?)",
                    (name.strip(), color, self.clock()),
                )
                team_id = cur.lastrowid
        except sqlite3.IntegrityError as ex:
            raise SessionConflict(f"team name already in use: {name!r}") from ex
        log.info("team_created", extra={"team_id": team_id, "team_name": name})
        return self.get_team(team_id)

    def get_team(self, team_id: int) -> Dict[str, Any]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            r = cx.execute("SELECT team_id, name, color FROM teams WHERE team_id=?",
                           (int(team_id),)).fetchone()
        if r is None:
            raise KeyError(f"team not found: {team_id}")
        return dict(r)

    def list_teams(self) -> List[Dict[str, Any]]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            rows = cx.execute("SELECT team_id, name, color FROM teams ORDER BY team_id").fetchall()
        return [dict(r) for r in rows]

    # ---------- stations ----------
    def upsert_station(self, uuid: str, name: str, location: Optional[str] = None,
                       is_active: bool = True) -> Dict[str, Any]:
        with write_txn(self.db_path, self.timeout_s) as cx:
            cx.execute(
                """INSERT INTO stations(uuid, name, location, is_active) VALUES(?,?,?,?)
                   ON CONFLICT(uuid) DO UPDATE SET
                     name=excluded.name, location=excluded.location, is_active=excluded.is_active""",
                (uuid.strip(), name.strip(), location, 1 if is_active else 0),
            )
        return self.get_station(uuid)

    def get_station(self, uuid: str) -> Dict[str, Any]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            r = cx.execute(
                "SELECT station_id, uuid, name, location, is_active FROM stations WHERE uuid=?",
                (uuid.strip(),),
            ).fetchone()
        if r is None:
            raise KeyError(f"station not found: {uuid}")
        out = dict(r)
        out["is_active"] = bool(out["is_active"])
        return out

    def list_stations(self, active_only: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT station_id, uuid, name, location, is_active FROM stations"
        if active_only:
            sql += " WHERE is_active=1"
        sql += " ORDER BY name"
        with read_txn(self.db_path, self.timeout_s) as cx:
            rows = cx.execute(sql).fetchall()
        return [{**dict(r), "is_active": bool(r["is_active"])} for r in rows]

    # ---------- badges ----------
    def lookup_badge(self, rfid_uid: str) -> Optional[Dict[str, Any]]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            return badge_in(cx, rfid_uid.strip())

    def resolve_team_for_tag(self, rfid_uid: str) -> Optional[int]:
        badge = self.lookup_badge(rfid_uid)
        if badge is None or badge["team_id"] is None:
            return None
        return int(badge["team_id"])

    def ensure_badge(self, rfid_uid: str) -> bool:
        """
        Create an unassigned badge for an unknown tag. Returns True when a row
        was inserted. Best-effort: failures are logged, never raised.
        """
        uid = rfid_uid.strip()
        try:
            with write_txn(self.db_path, self.timeout_s) as cx:
                cur = cx.execute(
                    "INSERT OR IGNORE INTO badges(rfid_uid, label, created_ms) VALUES(?,?,?)",
                    (uid, f"Badge {uid[:6]}", self.clock()),
                )
                created = cur.rowcount == 1
        except Exception:
            log.warning("badge_autocreate_failed", extra={"rfid_uid": uid}, exc_info=True)
            return False
        if created:
            log.info("badge_autocreated", extra={"rfid_uid": uid})
        return created

    def assign_badge(self, rfid_uid: str, team_id: Optional[int],
                     player_name: Optional[str] = None) -> Dict[str, Any]:
        uid = rfid_uid.strip()
        with write_txn(self.db_path, self.timeout_s) as cx:
            if team_id is not None:
                if cx.execute("SELECT 1 FROM teams WHERE team_id=?", (int(team_id),)).fetchone() is None:
                    raise KeyError(f"team not found: {team_id}")
            ts = self.clock()
            cx.execute(
                """INSERT INTO badges(rfid_uid, label, player_name, team_id, created_ms, updated_ms)
                   VALUES(?,?,?,?,?,?)
                   ON CONFLICT(rfid_uid) DO UPDATE SET
                     team_id=excluded.team_id,
                     player_name=COALESCE(excluded.player_name, badges.player_name),
                     updated_ms=excluded.updated_ms""",
                (uid, f"Badge {uid[:6]}", player_name,
                 int(team_id) if team_id is not None else None, ts, ts),
            )
            badge = badge_in(cx, uid)
        log.info("badge_assigned", extra={"rfid_uid": uid, "team_id": team_id})
        return badge

    def list_badges(self, unassigned_only: bool = False) -> List[Dict[str, Any]]:
        sql = """SELECT b.badge_id, b.rfid_uid, b.label, b.player_name, b.team_id,
                        t.name AS team_name, t.color AS team_color
                 FROM badges b LEFT JOIN teams t ON t.team_id = b.team_id"""
        if unassigned_only:
            sql += " WHERE b.team_id IS NULL"
        sql += " ORDER BY b.created_ms DESC, b.badge_id DESC"
        with read_txn(self.db_path, self.timeout_s) as cx:
            return [dict(r) for r in cx.execute(sql).fetchall()]

    # ---------- games & sessions ----------
    def create_game(self, name: str, type_: GameType = GameType.KING_OF_THE_HILL,
                    control_seconds_to_win: int = 0,
                    config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        gtype = GameType(type_)
        if gtype is GameType.KING_OF_THE_HILL and int(control_seconds_to_win) <= 0:
            raise ValueError("control_seconds_to_win must be > 0 for king_of_the_hill")
        with write_txn(self.db_path, self.timeout_s) as cx:
            cur = cx.execute(
                """INSERT INTO games(name, type, control_seconds_to_win, config_json, created_ms)
                   VALUES(?,?,?,?,?)""",
                (name.strip(), gtype.value, int(control_seconds_to_win),
                 json.dumps(config) if config else None, self.clock()),
            )
            game_id = cur.lastrowid
        return self.get_game(game_id)

    def get_game(self, game_id: int) -> Dict[str, Any]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            r = cx.execute(
                "SELECT game_id, name, type, control_seconds_to_win FROM games WHERE game_id=?",
                (int(game_id),),
            ).fetchone()
        if r is None:
            raise KeyError(f"game not found: {game_id}")
        return dict(r)

    def start_session(self, game_id: int, station_ids: List[str]) -> Dict[str, Any]:
        """
        Open the single active session for `game_id` over `station_ids`
        (active registered stations only). The partial UNIQUE index on
        game_sessions(status) rejects a second active session even when two
        operators race.
        """
        wanted = list(dict.fromkeys(s.strip() for s in station_ids if s and s.strip()))
        if not wanted:
            raise ValueError("a session needs at least one station")
        try:
            with write_txn(self.db_path, self.timeout_s) as cx:
                if cx.execute("SELECT 1 FROM games WHERE game_id=?", (int(game_id),)).fetchone() is None:
                    raise KeyError(f"game not found: {game_id}")
                for uuid in wanted:
                    r = cx.execute("SELECT is_active FROM stations WHERE uuid=?", (uuid,)).fetchone()
                    if r is None:
                        raise KeyError(f"station not found: {uuid}")
                    if not r["is_active"]:
                        raise ValueError(f"station is not active: {uuid}")
                cur = cx.execute(
                    "INSERT INTO game_sessions(game_id, status, start_ms) VALUES(?,?,?)",
                    (int(game_id), SessionStatus.ACTIVE.value, self.clock()),
                )
                session_id = cur.lastrowid
                cx.executemany(
                    "INSERT INTO game_stations(session_id, station_id) VALUES(?,?)",
                    [(session_id, uuid) for uuid in wanted],
                )
        except sqlite3.IntegrityError as ex:
            raise SessionConflict("another game session is already active") from ex
        log.info("session_started", extra={"session_id": session_id, "game_id": game_id,
                                           "stations": len(wanted)})
        return self.get_session(session_id)

    def get_session(self, session_id: int) -> Dict[str, Any]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            s = session_in(cx, session_id)
        if s is None:
            raise KeyError(f"session not found: {session_id}")
        return s

    def active_session(self) -> Optional[Dict[str, Any]]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            return active_session_in(cx)

    def stations_in_session(self, session_id: int) -> Set[str]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            rows = cx.execute("SELECT station_id FROM game_stations WHERE session_id=?",
                              (int(session_id),)).fetchall()
        return {r["station_id"] for r in rows}

    # ---------- raw scans ----------
    def record_scan(self, rfid_uid: str, station_id: str) -> Optional[Dict[str, Any]]:
        """Append to the raw scan log, tagged with the active session if any."""
        with write_txn(self.db_path, self.timeout_s) as cx:
            session = active_session_in(cx)
            cx.execute(
                """INSERT INTO rfid_scans(rfid_uid, station_id, game_id, game_session_id, ts_ms)
                   VALUES(?,?,?,?,?)""",
                (rfid_uid.strip(), station_id.strip(),
                 session["game_id"] if session else None,
                 session["session_id"] if session else None,
                 self.clock()),
            )
        return session

    def recent_scans(self, limit: int = 50) -> List[Dict[str, Any]]:
        cx = connect(self.db_path, self.timeout_s)
        try:
            rows = cx.execute(
                """SELECT r.scan_row_id, r.rfid_uid, r.station_id, r.game_session_id, r.ts_ms,
                          b.player_name, b.team_id
                   FROM rfid_scans r LEFT JOIN badges b ON b.rfid_uid = r.rfid_uid
                   ORDER BY r.ts_ms DESC, r.scan_row_id DESC
                   LIMIT ?""",
                (max(1, int(limit)),),
            ).fetchall()
        finally:
            cx.close()
        return [dict(r) for r in rows]
