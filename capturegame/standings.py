"""
capturegame/standings.py
------------------------
Team Control Aggregator for King-of-the-Hill sessions.

    total_control_seconds(team) = sum(closed interval durations)
                                + sum(now - controlled_at) over stations the team holds now
    percentage = min(100, total / control_seconds_to_win * 100)

Win policy
----------
The first team whose total reaches `control_seconds_to_win` wins. Teams are
evaluated in ascending team_id order, so when several cross the threshold in
the same evaluation the lowest team_id wins. The winner is written with a
conditional UPDATE (`WHERE winner_team_id IS NULL`) inside a write transaction,
so concurrent ticks and reactive checks record and announce exactly one win
per session.
"""

from __future__ import annotations
import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, List, Optional

from .control_engine import Clock, held_seconds
from .db_schema import now_ms, read_txn, write_txn
from .journal import EventHub
from .models import GameType, SessionStatus, TeamStanding
from .registry import active_session_in, session_in

log = logging.getLogger("capture.standings")


def _totals_in(cx: sqlite3.Connection, session: Dict[str, Any], now: int) -> Dict[int, Dict[str, int]]:
    """Per-team {seconds, active} for one session, from one snapshot."""
    # a completed session's live intervals were closed at stop; bound anything left at end_ms
    ref = now if session["status"] == SessionStatus.ACTIVE.value else int(session["end_ms"] or now)
    out: Dict[int, Dict[str, int]] = {}
    rows = cx.execute(
        """SELECT team_id, is_current_control, controlled_at_ms, control_duration_seconds
           FROM station_control WHERE game_session_id=?""",
        (int(session["session_id"]),),
    ).fetchall()
    for r in rows:
        acc = out.setdefault(int(r["team_id"]), {"seconds": 0, "active": 0})
        if r["is_current_control"]:
            acc["seconds"] += held_seconds(r["controlled_at_ms"], ref)
            acc["active"] += 1
        else:
            acc["seconds"] += int(r["control_duration_seconds"] or 0)
    return out


def _first_to_threshold(totals: Dict[int, Dict[str, int]], target: int) -> Optional[int]:
    for team_id in sorted(totals):
        if totals[team_id]["seconds"] >= target:
            return team_id
    return None


class StandingsAggregator:
    def __init__(self, db_path: str, hub: EventHub, clock: Optional[Clock] = None,
                 timeout_s: float = 5.0, stop_session_on_win: bool = True,
                 close_session: Optional[Callable[[int], Any]] = None):
        self.db_path = str(db_path)
        self.hub = hub
        self.clock: Clock = clock or now_ms
        self.timeout_s = timeout_s
        self.stop_session_on_win = bool(stop_session_on_win)
        self.close_session = close_session
        self._win_lock = threading.Lock()

    # ---------- standings ----------
    def compute_team_standings(self, session_id: int) -> List[TeamStanding]:
        with read_txn(self.db_path, self.timeout_s) as cx:
            session = session_in(cx, session_id)
            if session is None:
                raise KeyError(f"session not found: {session_id}")
            totals = _totals_in(cx, session, self.clock())
            teams = cx.execute("SELECT team_id, name, color FROM teams ORDER BY team_id").fetchall()

        target = int(session["control_seconds_to_win"] or 0)
        rows: List[TeamStanding] = []
        for t in teams:
            acc = totals.get(int(t["team_id"]), {"seconds": 0, "active": 0})
            pct = min(100.0, acc["seconds"] / target * 100.0) if target > 0 else 0.0
            rows.append(TeamStanding(
                team_id=int(t["team_id"]),
                name=t["name"],
                color=t["color"],
                control_seconds=acc["seconds"],
                percentage=round(pct, 2),
                active_station_count=acc["active"],
            ))
        rows.sort(key=lambda s: (-s.control_seconds, s.team_id))
        return rows

    # ---------- win detection ----------
    def check_winner(self, session_id: int) -> Optional[Dict[str, Any]]:
        """
        Return the session's winning team ({team_id, name, color}) or None.
        Records and announces the win the first time a team crosses the threshold.
        """
        with read_txn(self.db_path, self.timeout_s) as cx:
            session = session_in(cx, session_id)
            if session is None:
                raise KeyError(f"session not found: {session_id}")
            if session["winner_team_id"] is not None:
                return self._team(cx, int(session["winner_team_id"]))
            if (session["status"] != SessionStatus.ACTIVE.value
                    or session["game_type"] != GameType.KING_OF_THE_HILL.value):
                return None
            target = int(session["control_seconds_to_win"] or 0)
            if target <= 0 or _first_to_threshold(_totals_in(cx, session, self.clock()), target) is None:
                return None

        return self._record_win(session_id, target)

    def _record_win(self, session_id: int, target: int) -> Optional[Dict[str, Any]]:
        recorded = False
        with self._win_lock:
            with write_txn(self.db_path, self.timeout_s) as cx:
                session = session_in(cx, session_id)
                if session["winner_team_id"] is not None:
                    return self._team(cx, int(session["winner_team_id"]))
                if session["status"] != SessionStatus.ACTIVE.value:
                    return None
                now = self.clock()
                winner_id = _first_to_threshold(_totals_in(cx, session, now), target)
                if winner_id is None:
                    return None
                cur = cx.execute(
                    """UPDATE game_sessions SET winner_team_id=?, won_ms=?
                       WHERE session_id=? AND winner_team_id IS NULL""",
                    (winner_id, now, int(session_id)),
                )
                recorded = cur.rowcount == 1
                team = self._team(cx, winner_id)

        if recorded:
            log.info("win_recorded session=%s team=%s", session_id, winner_id)
            self.hub.emit("game_won", f"koth:{session_id}",
                          {"session_id": int(session_id), "team": team})
            if self.stop_session_on_win and self.close_session is not None:
                try:
                    self.close_session(int(session_id))
                except Exception:
                    log.exception("stop_on_win_failed", extra={"session_id": session_id})
        return team

    @staticmethod
    def _team(cx: sqlite3.Connection, team_id: int) -> Dict[str, Any]:
        r = cx.execute("SELECT team_id, name, color FROM teams WHERE team_id=?", (team_id,)).fetchone()
        return dict(r) if r is not None else {"team_id": team_id, "name": None, "color": None}

    # ---------- periodic evaluation ----------
    def tick(self) -> Optional[Dict[str, Any]]:
        """One bounded-interval evaluation against the active KOTH session (if any)."""
        with read_txn(self.db_path, self.timeout_s) as cx:
            session = active_session_in(cx)
        if session is None or session["game_type"] != GameType.KING_OF_THE_HILL.value:
            return None
        return self.check_winner(int(session["session_id"]))
