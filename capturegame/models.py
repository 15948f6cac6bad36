"""
capturegame/models.py
---------------------
Typed shapes shared by the engines and the HTTP layer.

Every scan outcome is a member of a closed enum and every response has one
fixed shape per engine, so callers never check for optional ad hoc keys.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ----------------------------- Enums -----------------------------
class GameType(str, Enum):
    KING_OF_THE_HILL = "king_of_the_hill"
    SEQUENCE = "sequence"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class KothStatus(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"


class Outcome(str, Enum):
    PROGRESS = "PROGRESS"
    HOLDING = "HOLDING"
    WRONG_ORDER = "WRONG_ORDER"
    DEFENDER_LOCK = "DEFENDER_LOCK"
    ALREADY_DONE = "ALREADY_DONE"
    WIN = "WIN"
    IGNORED = "IGNORED"


class SequenceMode(str, Enum):
    ORDERED = "ORDERED"
    FREE = "FREE"


class PenaltyType(str, Enum):
    RESET_TO_ZERO = "reset_to_zero"
    TIME_PENALTY = "time_penalty"
    NONE = "none"


class LockMode(str, Enum):
    LOCK_CURRENT = "lock_current"
    LOCK_LAST = "lock_last"


class WinRuleType(str, Enum):
    FIRST_TO_FINISH = "first_to_finish"
    MOST_POINTS_WHEN_TIME_ENDS = "most_points_when_time_ends"


# Soft no-op reasons (scan acknowledged, nothing changed)
REASON_NO_ACTIVE_SESSION = "no_active_session"
REASON_NOT_KOTH = "not_koth_session"
REASON_STATION_NOT_IN_SESSION = "station_not_in_session"
REASON_UNKNOWN_BADGE = "unknown_badge"
REASON_UNASSIGNED_BADGE = "unassigned_badge"
REASON_UNKNOWN_GAME = "unknown_game"
REASON_GAME_OVER = "game_over"


def _require_text(v: Any, name: str) -> str:
    s = str(v).strip() if v is not None else ""
    if not s:
        raise ValueError(f"{name} must be a non-empty string")
    return s


# ----------------------------- Sequence config -----------------------------
class WrongScanPenalty(BaseModel):
    type: PenaltyType = PenaltyType.RESET_TO_ZERO
    seconds: int = Field(default=0, ge=0)


class DefenderReset(BaseModel):
    mode: LockMode = LockMode.LOCK_CURRENT
    cooldown_sec: int = Field(default=15, ge=0)


class WinRule(BaseModel):
    type: WinRuleType = WinRuleType.FIRST_TO_FINISH


class SequenceGameConfig(BaseModel):
    """
    Rules for one sequence game.

    `sequence` is the required visiting order in ORDERED mode, and the full
    set of stations to visit in FREE mode. `multi_scan` maps station id to the
    number of scans needed to complete it (absent means 1).
    """
    game_id: str
    mode: SequenceMode = SequenceMode.ORDERED
    sequence: List[str]
    multi_scan: Dict[str, int] = Field(default_factory=dict)
    time_window_sec: Optional[int] = Field(default=None, gt=0)
    wrong_scan_penalty: WrongScanPenalty = Field(default_factory=WrongScanPenalty)
    defender_reset: DefenderReset = Field(default_factory=DefenderReset)
    win_rule: WinRule = Field(default_factory=WinRule)
    max_duration_sec: int = Field(default=600, gt=0)

    @field_validator("game_id")
    @classmethod
    def _game_id_text(cls, v: str) -> str:
        return _require_text(v, "game_id")

    @field_validator("sequence")
    @classmethod
    def _sequence_non_empty(cls, v: List[str]) -> List[str]:
        out = [_require_text(s, "sequence entry") for s in v]
        if not out:
            raise ValueError("sequence must list at least one station")
        return out

    @field_validator("multi_scan")
    @classmethod
    def _multi_scan_positive(cls, v: Dict[str, int]) -> Dict[str, int]:
        for station, count in v.items():
            if int(count) < 1:
                raise ValueError(f"multi_scan[{station!r}] must be >= 1")
        return {str(k): int(c) for k, c in v.items()}

    @model_validator(mode="after")
    def _mode_rules(self) -> "SequenceGameConfig":
        if len(set(self.sequence)) != len(self.sequence):
            # FREE counts |visited| against len(sequence); duplicates would make it unwinnable
            raise ValueError("sequence must not repeat a station")
        return self

    def scans_needed(self, station_id: str) -> int:
        return int(self.multi_scan.get(station_id, 1) or 1)


# ----------------------------- Sequence responses -----------------------------
class ProgressMeta(BaseModel):
    visited: List[str] = Field(default_factory=list)
    streak_count: int = 0
    last_completed: Optional[str] = None


class TeamProgress(BaseModel):
    game_id: str
    team_id: int
    idx: int = 0
    points: int = 0
    window_expires_at: Optional[str] = None
    last_update: str
    meta: ProgressMeta = Field(default_factory=ProgressMeta)


class StationFeedback(BaseModel):
    led_color: str
    blink_ms: int


class Broadcast(BaseModel):
    type: str = "state_update"
    payload: Dict[str, Any]


class ScanResponse(BaseModel):
    ok: bool
    team_id: Optional[int]
    event: Outcome
    team_progress: Optional[TeamProgress]
    station_feedback: StationFeedback
    broadcast: Optional[Broadcast] = None
    reason: Optional[str] = None


# ----------------------------- KOTH responses -----------------------------
class KothScanResult(BaseModel):
    status: KothStatus
    station_id: str
    session_id: Optional[int] = None
    team_id: Optional[int] = None
    old_team_id: Optional[int] = None
    new_team_id: Optional[int] = None
    closed_duration_seconds: Optional[int] = None
    reason: Optional[str] = None
    badge_created: bool = False


class TeamStanding(BaseModel):
    team_id: int
    name: str
    color: str
    control_seconds: int
    percentage: float
    active_station_count: int


class StationState(BaseModel):
    station_id: str
    name: Optional[str]
    team_id: Optional[int]
    controlled_at: Optional[str]
    held_seconds: int


# ----------------------------- Requests -----------------------------
class RfidScanIn(BaseModel):
    rfid_uid: str
    station_id: str

    @field_validator("rfid_uid", "station_id")
    @classmethod
    def _text(cls, v: str, info) -> str:
        return _require_text(v, info.field_name)


class SequenceScanIn(BaseModel):
    scan_id: str
    game_id: str
    station_id: str
    rfid_uid: str
    scanned_at: Optional[str] = None   # reader clock; informational only

    @field_validator("scan_id", "game_id", "station_id", "rfid_uid")
    @classmethod
    def _text(cls, v: str, info) -> str:
        return _require_text(v, info.field_name)


class TeamIn(BaseModel):
    name: str
    color: str = "#00ffff"

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _require_text(v, "name")


class StationIn(BaseModel):
    uuid: str
    name: str
    location: Optional[str] = None
    is_active: bool = True

    @field_validator("uuid", "name")
    @classmethod
    def _text(cls, v: str, info) -> str:
        return _require_text(v, info.field_name)


class BadgeAssignIn(BaseModel):
    rfid_uid: str
    team_id: Optional[int] = None     # None unassigns
    player_name: Optional[str] = None

    @field_validator("rfid_uid")
    @classmethod
    def _uid(cls, v: str) -> str:
        return _require_text(v, "rfid_uid")


class GameIn(BaseModel):
    name: str
    control_minutes_to_win: float = Field(gt=0)

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _require_text(v, "name")


class SessionStartIn(BaseModel):
    game_id: int
    station_ids: List[str] = Field(min_length=1)


class SequenceGameIn(BaseModel):
    """Partial config; unspecified rules come from sequence.defaults."""
    game_id: str
    sequence: List[str]
    mode: Optional[SequenceMode] = None
    multi_scan: Optional[Dict[str, int]] = None
    time_window_sec: Optional[int] = None
    wrong_scan_penalty: Optional[WrongScanPenalty] = None
    defender_reset: Optional[DefenderReset] = None
    win_rule: Optional[WinRule] = None
    max_duration_sec: Optional[int] = None
