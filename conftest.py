import pytest

from capturegame.control_engine import ControlEngine
from capturegame.sequence_engine import SequenceEngine
from capturegame.standings import StandingsAggregator


class FakeClock:
    """Settable epoch-ms clock; engines call it like now_ms()."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.t = start_ms

    def __call__(self) -> int:
        return self.t

    def advance(self, seconds: float) -> int:
        self.t += int(seconds * 1000)
        return self.t


@pytest.fixture
def cfg(tmp_path):
    return {
        "app": {
            "engine": {
                "persistence": {"sqlite_path": str(tmp_path / "capture.sqlite"), "busy_timeout_ms": 5000},
                "journal": {"enabled": True, "ring_size": 200},
                "standings": {"tick_s": 1.0, "stop_session_on_win": True},
            }
        },
        "sequence": {"defaults": {"mode": "ORDERED", "time_window_sec": 60,
                                  "defender_reset": {"mode": "lock_current", "cooldown_sec": 15}}},
        "integrations": {"feedback": {"osc_out": {"enabled": False}}},
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def control(cfg, clock):
    return ControlEngine(cfg, clock=clock)


@pytest.fixture
def registry(control):
    return control.registry


@pytest.fixture
def standings(control):
    return StandingsAggregator(control.db_path, control.hub, clock=control.clock,
                               close_session=control.stop_session)


@pytest.fixture
def sequence(control):
    return SequenceEngine(control.db_path, control.registry, control.hub, clock=control.clock)


@pytest.fixture
def teams(registry):
    """Red (badge R1), Blue (B1), Green (G1) in that team_id order."""
    out = {}
    for name, uid in (("Red", "R1"), ("Blue", "B1"), ("Green", "G1")):
        team = registry.create_team(name)
        registry.assign_badge(uid, team["team_id"])
        out[name] = team["team_id"]
    return out


@pytest.fixture
def start_koth(registry):
    """Register stations, create a KOTH game and open its session."""
    def _start(stations=("S1", "S2"), seconds_to_win=60):
        for uuid in stations:
            registry.upsert_station(uuid, f"Station {uuid}")
        game = registry.create_game("Hill", control_seconds_to_win=seconds_to_win)
        return registry.start_session(game["game_id"], list(stations))
    return _start
