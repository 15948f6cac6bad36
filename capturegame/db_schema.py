from __future__ import annotations
import sqlite3
import time
from datetime import datetime, timezone
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


"""
capturegame/db_schema.py
------------------------
Centralized, idempotent SQLite schema management.

Design goals
- Registry tables (teams, badges, stations) with DB-level uniqueness on the
  hardware identifiers (badge rfid_uid, station uuid).
- King-of-the-Hill model: games, game_sessions, game_stations, station_control.
  * "At most one ACTIVE session" is a partial UNIQUE index on game_sessions.
  * "At most one CURRENT holder per (station, session)" is a partial UNIQUE
    index on station_control.
- Sequence model: sequence_games, sequence_team_progress, sequence_station_locks,
  sequence_scans (idempotency log keyed by the client scan_id).
- Raw scan log + event journal.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.

All timestamps are INTEGER epoch milliseconds.
"""

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 4

# ------------------------
# DDL: Registry
# ------------------------
REGISTRY_DDL = """
CREATE TABLE IF NOT EXISTS teams (
    team_id     INTEGER PRIMARY KEY,
    name        TEXT NOT NULL UNIQUE,
    color       TEXT NOT NULL DEFAULT '#00ffff',
    created_ms  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS badges (
    badge_id    INTEGER PRIMARY KEY,
    rfid_uid    TEXT NOT NULL UNIQUE,       -- physical tag identifier
    label       TEXT,
    player_name TEXT,
    team_id     INTEGER,                    -- NULL while unassigned
    created_ms  INTEGER NOT NULL,
    updated_ms  INTEGER,
    FOREIGN KEY (team_id) REFERENCES teams(team_id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_badges_team ON badges(team_id);

CREATE TABLE IF NOT EXISTS stations (
    station_id  INTEGER PRIMARY KEY,
    uuid        TEXT NOT NULL UNIQUE,       -- stable hardware identifier sent by the reader
    name        TEXT NOT NULL,
    location    TEXT,
    is_active   INTEGER NOT NULL DEFAULT 1
);
"""

# ------------------------
# DDL: King of the Hill
# ------------------------
KOTH_DDL = """
CREATE TABLE IF NOT EXISTS games (
    game_id                 INTEGER PRIMARY KEY,
    name                    TEXT NOT NULL,
    type                    TEXT NOT NULL CHECK (type IN ('king_of_the_hill','sequence')),
    control_seconds_to_win  INTEGER NOT NULL DEFAULT 0,
    config_json             TEXT,
    created_ms              INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS game_sessions (
    session_id      INTEGER PRIMARY KEY,
    game_id         INTEGER NOT NULL,
    status          TEXT NOT NULL CHECK (status IN ('active','completed')),
    start_ms        INTEGER NOT NULL,
    end_ms          INTEGER,
    winner_team_id  INTEGER,
    won_ms          INTEGER,
    FOREIGN KEY (game_id) REFERENCES games(game_id)
);
-- Partial UNIQUE: only one session may be active system-wide.
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
ON game_sessions(status)
WHERE status = 'active';

CREATE TABLE IF NOT EXISTS game_stations (
    session_id  INTEGER NOT NULL,
    station_id  TEXT NOT NULL,              -- station uuid
    PRIMARY KEY (session_id, station_id),
    FOREIGN KEY (session_id) REFERENCES game_sessions(session_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS station_control (
    control_id                INTEGER PRIMARY KEY,
    station_id                TEXT NOT NULL,
    game_session_id           INTEGER NOT NULL,
    team_id                   INTEGER NOT NULL,
    controlled_at_ms          INTEGER NOT NULL,     -- interval start
    control_duration_seconds  INTEGER NOT NULL DEFAULT 0,  -- filled when closed
    is_current_control        INTEGER NOT NULL DEFAULT 1,
    closed_at_ms              INTEGER,
    FOREIGN KEY (game_session_id) REFERENCES game_sessions(session_id)
);
-- Partial UNIQUE: at most one current holder per (station, session).
CREATE UNIQUE INDEX IF NOT EXISTS idx_station_control_one_current
ON station_control(station_id, game_session_id)
WHERE is_current_control = 1;
CREATE INDEX IF NOT EXISTS idx_station_control_session_team
ON station_control(game_session_id, team_id);
"""

# ------------------------
# DDL: Raw detections
# ------------------------
SCANS_DDL = """
CREATE TABLE IF NOT EXISTS rfid_scans (
    scan_row_id     INTEGER PRIMARY KEY,
    rfid_uid        TEXT NOT NULL,
    station_id      TEXT NOT NULL,
    game_id         INTEGER,
    game_session_id INTEGER,
    ts_ms           INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rfid_scans_ts ON rfid_scans(ts_ms);
CREATE INDEX IF NOT EXISTS idx_rfid_scans_uid ON rfid_scans(rfid_uid);
"""

# ------------------------
# DDL: Sequence mode
# ------------------------
SEQUENCE_DDL = """
CREATE TABLE IF NOT EXISTS sequence_games (
    game_id         TEXT PRIMARY KEY,
    session_id      INTEGER UNIQUE,             -- holds the single active game_sessions slot
    config_json     TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','completed')),
    started_ms      INTEGER NOT NULL,
    ended_ms        INTEGER,
    winner_team_id  INTEGER
);

CREATE TABLE IF NOT EXISTS sequence_team_progress (
    game_id               TEXT NOT NULL,
    team_id               INTEGER NOT NULL,
    idx                   INTEGER NOT NULL DEFAULT 0,
    points                INTEGER NOT NULL DEFAULT 0,
    window_expires_at_ms  INTEGER,
    last_update_ms        INTEGER NOT NULL,
    meta_json             TEXT NOT NULL DEFAULT '{}',   -- visited[], streak_count, last_completed
    PRIMARY KEY (game_id, team_id)
);

CREATE TABLE IF NOT EXISTS sequence_station_locks (
    game_id         TEXT NOT NULL,
    station_id      TEXT NOT NULL,
    locked_by_team  INTEGER NOT NULL,
    locked_until_ms INTEGER NOT NULL,
    PRIMARY KEY (game_id, station_id)
);

-- Idempotency/audit log: the PRIMARY KEY on scan_id closes the retry race.
CREATE TABLE IF NOT EXISTS sequence_scans (
    scan_id        TEXT PRIMARY KEY,
    game_id        TEXT NOT NULL,
    station_id     TEXT NOT NULL,
    rfid_uid       TEXT NOT NULL,
    team_id        INTEGER,
    outcome        TEXT NOT NULL,
    ts_ms          INTEGER NOT NULL,
    response_json  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sequence_scans_game_ts ON sequence_scans(game_id, ts_ms);
"""

# ------------------------
# DDL: Event journal
# ------------------------
JOURNAL_DDL = """
CREATE TABLE IF NOT EXISTS game_events (
    id            INTEGER PRIMARY KEY,
    ts_ms         INTEGER NOT NULL,
    type          TEXT NOT NULL,
    scope         TEXT,                     -- 'koth:<session_id>' or 'sequence:<game_id>'
    payload_json  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_game_events_scope_ts ON game_events(scope, ts_ms);
"""

# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()


def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    # children before parents
    for table in (
        "game_events",
        "sequence_scans",
        "sequence_station_locks",
        "sequence_team_progress",
        "sequence_games",
        "rfid_scans",
        "station_control",
        "game_stations",
        "game_sessions",
        "games",
        "stations",
        "badges",
        "teams",
    ):
        cur.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()


def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        # WAL lets the aggregator read a consistent snapshot while a scan writes.
        conn.execute("PRAGMA journal_mode=WAL;")

        _exec_script(conn, REGISTRY_DDL)
        _exec_script(conn, KOTH_DDL)
        _exec_script(conn, SCANS_DDL)
        _exec_script(conn, SEQUENCE_DDL)
        _exec_script(conn, JOURNAL_DDL)

        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()


def connect(db_path: str | Path, timeout_s: float = 5.0) -> sqlite3.Connection:
    """
    Open a connection in manual-transaction mode with Row access and FKs on.
    `timeout_s` bounds how long we wait on another writer's lock.
    """
    cx = sqlite3.connect(str(db_path), timeout=timeout_s, isolation_level=None,
                         check_same_thread=False)
    cx.row_factory = sqlite3.Row
    cx.execute("PRAGMA foreign_keys=ON;")
    return cx


@contextmanager
def write_txn(db_path: str | Path, timeout_s: float = 5.0) -> Iterator[sqlite3.Connection]:
    """
    BEGIN IMMEDIATE on a fresh connection: takes the write lock up front so a
    read-modify-write sequence cannot interleave with another writer.
    Commits on success, rolls back on any exception.
    """
    cx = connect(db_path, timeout_s)
    try:
        cx.execute("BEGIN IMMEDIATE")
        try:
            yield cx
        except BaseException:
            cx.execute("ROLLBACK")
            raise
        cx.execute("COMMIT")
    finally:
        cx.close()


@contextmanager
def read_txn(db_path: str | Path, timeout_s: float = 5.0) -> Iterator[sqlite3.Connection]:
    """Deferred read transaction: every SELECT inside sees the same snapshot."""
    cx = connect(db_path, timeout_s)
    try:
        cx.execute("BEGIN")
        try:
            yield cx
        finally:
            cx.execute("ROLLBACK")
    finally:
        cx.close()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso_utc(ts_ms: int | None) -> str | None:
    """Epoch ms -> '2025-01-01T12:00:00.000Z' (None passes through)."""
    if ts_ms is None:
        return None
    return (
        datetime.fromtimestamp(int(ts_ms) / 1000.0, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
