import threading
import uuid

import pytest
from pydantic import ValidationError

from capturegame.db_schema import connect, to_iso_utc
from capturegame.models import Outcome, SequenceGameConfig
from capturegame.registry import SessionConflict
from capturegame.sequence_engine import build_game_config


def _config(**kw):
    base = {
        "game_id": "g1",
        "mode": "ORDERED",
        "sequence": ["A", "B", "C"],
        "time_window_sec": None,
        "defender_reset": {"mode": "lock_current", "cooldown_sec": 0},
    }
    base.update(kw)
    return SequenceGameConfig.model_validate(base)


@pytest.fixture
def start(sequence, teams):
    def _start(**kw):
        cfg = _config(**kw)
        sequence.start_sequence_game(cfg)
        return cfg
    return _start


def scan(sequence, uid, station, game_id="g1", scan_id=None):
    return sequence.handle_sequence_scan(scan_id or uuid.uuid4().hex, game_id, station, uid)


# ----------------------------- ORDERED -----------------------------
def test_ordered_progress_to_win(sequence, start, teams):
    start()
    r = scan(sequence, "R1", "A")
    assert r.ok and r.event is Outcome.PROGRESS
    assert r.team_id == teams["Red"]
    assert (r.team_progress.idx, r.team_progress.points) == (1, 1)
    assert r.station_feedback.led_color == "green"
    assert r.broadcast.type == "state_update"
    assert r.broadcast.payload["outcome"] == "PROGRESS"

    assert scan(sequence, "R1", "B").event is Outcome.PROGRESS
    win = scan(sequence, "R1", "C")
    assert win.event is Outcome.WIN
    assert win.station_feedback.blink_ms == 2000

    state = sequence.sequence_state("g1")
    assert state["winner_team_id"] == teams["Red"]
    assert state["status"] == "completed"


def test_multi_scan_station_holds_until_count(sequence, start):
    start(multi_scan={"B": 3})
    scan(sequence, "R1", "A")
    first = scan(sequence, "R1", "B")
    assert first.event is Outcome.HOLDING
    assert first.team_progress.meta.streak_count == 1
    assert first.station_feedback.led_color == "yellow"
    assert scan(sequence, "R1", "B").team_progress.meta.streak_count == 2
    done = scan(sequence, "R1", "B")
    assert done.event is Outcome.PROGRESS
    assert done.team_progress.idx == 2
    assert done.team_progress.meta.streak_count == 0


def test_wrong_station_mid_hold_drops_the_streak(sequence, start):
    start(multi_scan={"A": 1, "B": 2, "C": 1})
    assert scan(sequence, "R1", "A").event is Outcome.PROGRESS
    assert scan(sequence, "R1", "B").event is Outcome.HOLDING
    r = scan(sequence, "R1", "C")
    assert r.event is Outcome.WRONG_ORDER
    assert r.team_progress.idx == 0
    assert r.team_progress.meta.streak_count == 0

    # a half-held station does not carry over into the next attempt
    assert scan(sequence, "R1", "A").event is Outcome.PROGRESS
    assert scan(sequence, "R1", "B").event is Outcome.HOLDING
    assert scan(sequence, "R1", "B").event is Outcome.PROGRESS
    final = scan(sequence, "R1", "C")
    assert final.event is Outcome.WIN
    assert final.team_progress.idx == 3


def test_wrong_station_resets_to_zero(sequence, start):
    start()
    scan(sequence, "R1", "A")
    r = scan(sequence, "R1", "C")
    assert r.event is Outcome.WRONG_ORDER
    assert (r.team_progress.idx, r.team_progress.points) == (0, 0)
    assert r.station_feedback.led_color == "red"


def test_wrong_station_without_penalty_keeps_position(sequence, start):
    start(wrong_scan_penalty={"type": "none"})
    scan(sequence, "R1", "A")
    r = scan(sequence, "R1", "C")
    assert r.event is Outcome.WRONG_ORDER
    assert r.team_progress.idx == 1


def test_time_penalty_pulls_deadline_in(sequence, start, clock):
    t0 = clock()
    start(time_window_sec=60, wrong_scan_penalty={"type": "time_penalty", "seconds": 20})
    first = scan(sequence, "R1", "A")
    assert first.team_progress.window_expires_at == to_iso_utc(t0 + 60_000)
    r = scan(sequence, "R1", "C")
    assert r.event is Outcome.WRONG_ORDER
    assert r.team_progress.idx == 1
    assert r.team_progress.window_expires_at == to_iso_utc(t0 + 40_000)


def test_missed_window_sends_team_back_to_start(sequence, start, clock):
    start(time_window_sec=30, wrong_scan_penalty={"type": "none"})
    scan(sequence, "R1", "A")
    clock.advance(31)
    late = scan(sequence, "R1", "B")
    assert late.event is Outcome.WRONG_ORDER
    assert late.team_progress.idx == 0
    assert late.team_progress.window_expires_at is None
    assert scan(sequence, "R1", "A").event is Outcome.PROGRESS


def test_scan_inside_window_counts(sequence, start, clock):
    start(time_window_sec=30)
    scan(sequence, "R1", "A")
    clock.advance(29)
    assert scan(sequence, "R1", "B").team_progress.idx == 2


def test_finished_team_gets_already_done(sequence, start):
    start(win_rule={"type": "most_points_when_time_ends"})
    for st in ("A", "B", "C"):
        scan(sequence, "R1", st)
    r = scan(sequence, "R1", "A")
    assert r.event is Outcome.ALREADY_DONE
    assert r.station_feedback.led_color == "white"


# ----------------------------- defender locks -----------------------------
def test_lock_current_blocks_other_teams(sequence, start, clock, teams):
    start(defender_reset={"mode": "lock_current", "cooldown_sec": 10})
    scan(sequence, "R1", "A")
    blocked = scan(sequence, "B1", "A")
    assert blocked.event is Outcome.DEFENDER_LOCK
    assert blocked.team_progress.idx == 0
    assert blocked.broadcast is None
    assert blocked.station_feedback.led_color == "purple"

    # the lock holder is judged normally
    assert scan(sequence, "R1", "A").event is Outcome.WRONG_ORDER

    clock.advance(11)
    assert scan(sequence, "B1", "A").event is Outcome.PROGRESS


def test_lock_last_locks_previous_station(sequence, start, teams):
    start(defender_reset={"mode": "lock_last", "cooldown_sec": 30})
    scan(sequence, "R1", "A")
    # first completion has no previous station to lock
    assert scan(sequence, "B1", "A").event is Outcome.PROGRESS
    scan(sequence, "R1", "B")
    assert scan(sequence, "G1", "A").event is Outcome.DEFENDER_LOCK
    locks = sequence.sequence_state("g1")["locks"]
    assert [(l["station_id"], l["locked_by_team"]) for l in locks] == [("A", teams["Red"])]
    # B was just completed by Red but only the previous station is locked
    assert scan(sequence, "B1", "B").event is Outcome.PROGRESS


# ----------------------------- FREE -----------------------------
def test_free_mode_any_order(sequence, start, teams):
    start(mode="FREE")
    r = scan(sequence, "R1", "C")
    assert r.event is Outcome.PROGRESS
    assert r.team_progress.points == 1
    assert r.team_progress.meta.visited == ["C"]

    again = scan(sequence, "R1", "C")
    assert again.event is Outcome.ALREADY_DONE
    assert again.team_progress.points == 1

    scan(sequence, "R1", "A")
    assert scan(sequence, "R1", "B").event is Outcome.WIN


def test_free_mode_ignores_stations_outside_the_game(sequence, start):
    start(mode="FREE")
    for station in ("X", "Y", "Z"):
        r = scan(sequence, "R1", station)
        assert r.event is Outcome.WRONG_ORDER
        assert r.team_progress.points == 0
        assert r.team_progress.meta.visited == []
    state = sequence.sequence_state("g1")
    assert state["status"] == "active"
    assert state["winner_team_id"] is None

    scan(sequence, "R1", "A")
    scan(sequence, "R1", "X")
    assert scan(sequence, "R1", "B").team_progress.points == 2


# ----------------------------- win rules -----------------------------
def test_first_finisher_wins_once(sequence, start, teams):
    start(mode="FREE", sequence=["A"])
    assert scan(sequence, "R1", "A").event is Outcome.WIN
    late = scan(sequence, "B1", "A")
    assert late.event is Outcome.IGNORED
    assert late.reason == "game_over"
    assert len(sequence.hub.recent(type_="game_won")) == 1


def test_most_points_at_finish(sequence, start, teams):
    start(win_rule={"type": "most_points_when_time_ends"})
    scan(sequence, "B1", "A")
    scan(sequence, "R1", "A")
    scan(sequence, "R1", "B")
    state = sequence.finish_sequence_game("g1")
    assert state["winner_team_id"] == teams["Red"]
    assert state["status"] == "completed"


def test_most_points_tie_goes_to_earliest(sequence, start, clock, teams):
    start(win_rule={"type": "most_points_when_time_ends"})
    scan(sequence, "B1", "A")
    scan(sequence, "B1", "B")
    clock.advance(5)
    scan(sequence, "R1", "A")
    scan(sequence, "R1", "B")
    assert sequence.finish_sequence_game("g1")["winner_team_id"] == teams["Blue"]


def test_game_expires_after_max_duration(sequence, start, clock):
    start(max_duration_sec=60)
    clock.advance(30)
    assert sequence.expire_due_games() == []
    clock.advance(31)
    late = scan(sequence, "R1", "A")
    assert late.event is Outcome.IGNORED
    assert late.reason == "game_over"
    assert sequence.expire_due_games() == ["g1"]
    assert sequence.sequence_state("g1")["status"] == "completed"


# ----------------------------- idempotency -----------------------------
def test_replayed_scan_id_returns_identical_bytes(sequence, start, control):
    start()
    first = sequence.process_scan("scan-1", "g1", "A", "R1")
    scan(sequence, "R1", "B")
    replay = sequence.process_scan("scan-1", "g1", "A", "R1")
    assert replay == first

    state = sequence.sequence_state("g1")
    assert state["teams"][0]["idx"] == 2
    cx = connect(control.db_path)
    try:
        n = cx.execute("SELECT COUNT(*) FROM sequence_scans WHERE scan_id='scan-1'").fetchone()[0]
    finally:
        cx.close()
    assert n == 1


def test_concurrent_retries_apply_once(sequence, start):
    start(multi_scan={"A": 10})
    n = 6
    barrier = threading.Barrier(n)
    bodies = []

    def worker():
        barrier.wait()
        bodies.append(sequence.process_scan("dup", "g1", "A", "R1"))

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(bodies)) == 1
    assert sequence.sequence_state("g1")["teams"][0]["meta"]["streak_count"] == 1


def test_concurrent_distinct_scans_serialize(sequence, start):
    start(multi_scan={"A": 10})
    n = 5
    barrier = threading.Barrier(n)

    def worker():
        barrier.wait()
        scan(sequence, "R1", "A")

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sequence.sequence_state("g1")["teams"][0]["meta"]["streak_count"] == n


# ----------------------------- soft no-ops -----------------------------
def test_unknown_game_is_ignored(sequence, teams):
    r = scan(sequence, "R1", "A", game_id="nope")
    assert not r.ok
    assert r.event is Outcome.IGNORED
    assert r.reason == "unknown_game"
    assert r.station_feedback.led_color == "blue"


def test_unknown_badge_is_ignored_and_registered(sequence, start, registry):
    start()
    r = scan(sequence, "NEW-TAG-1", "A")
    assert r.event is Outcome.IGNORED
    assert r.reason == "unknown_badge"
    assert r.team_progress is None
    assert registry.lookup_badge("NEW-TAG-1")["team_id"] is None
    assert scan(sequence, "NEW-TAG-1", "A").reason == "unassigned_badge"


def test_blank_fields_are_rejected(sequence):
    with pytest.raises(ValueError):
        sequence.process_scan("", "g1", "A", "R1")


def test_scan_is_announced_with_station_feedback(sequence, start):
    seen = []
    sequence.hub.subscribe(seen.append)
    start()
    scan(sequence, "R1", "A")
    ev = [e for e in seen if e["type"] == "sequence_scan"][-1]
    assert ev["station_id"] == "A"
    assert ev["outcome"] == "PROGRESS"
    assert ev["station_feedback"] == {"led_color": "green", "blink_ms": 1000}


# ----------------------------- configuration -----------------------------
def test_duplicate_game_id_conflicts(sequence, start):
    start()
    with pytest.raises(SessionConflict):
        sequence.start_sequence_game(_config())


def test_unknown_game_state_raises(sequence):
    with pytest.raises(KeyError):
        sequence.sequence_state("missing")
    with pytest.raises(KeyError):
        sequence.finish_sequence_game("missing")


@pytest.mark.parametrize("bad", [
    {"sequence": []},
    {"sequence": ["A", "A"]},
    {"multi_scan": {"A": 0}},
    {"game_id": "  "},
    {"defender_reset": {"mode": "lock_current", "cooldown_sec": -1}},
])
def test_invalid_configs_rejected(bad):
    with pytest.raises(ValidationError):
        _config(**bad)


def test_partial_request_takes_defaults():
    defaults = {"mode": "ORDERED", "time_window_sec": 60,
                "defender_reset": {"mode": "lock_last", "cooldown_sec": 15}}
    cfg = build_game_config({"game_id": "g9", "sequence": ["A", "B"], "mode": "FREE"}, defaults)
    assert cfg.mode.value == "FREE"
    assert cfg.time_window_sec == 60
    assert cfg.defender_reset.mode.value == "lock_last"
    assert cfg.defender_reset.cooldown_sec == 15

    no_window = build_game_config({"game_id": "g9", "sequence": ["A"], "time_window_sec": None}, defaults)
    assert no_window.time_window_sec is None


# ----------------------------- session slot -----------------------------
def test_sequence_game_holds_the_active_session(sequence, start, registry):
    start()
    state = sequence.sequence_state("g1")
    active = registry.active_session()
    assert active["session_id"] == state["session_id"]
    assert active["game_type"] == "sequence"
    assert registry.stations_in_session(active["session_id"]) == {"A", "B", "C"}
    assert sequence.game_for_session(active["session_id"]) == "g1"


def test_second_sequence_game_conflicts_while_one_runs(sequence, start):
    start()
    with pytest.raises(SessionConflict):
        sequence.start_sequence_game(_config(game_id="g2"))
    with pytest.raises(KeyError):
        sequence.sequence_state("g2")


def test_sequence_game_cannot_start_during_koth(sequence, teams, start_koth):
    start_koth()
    with pytest.raises(SessionConflict):
        sequence.start_sequence_game(_config())


def test_koth_cannot_start_during_sequence_game(start, registry):
    start()
    registry.upsert_station("S1", "Station S1")
    game = registry.create_game("Hill", control_seconds_to_win=60)
    with pytest.raises(SessionConflict):
        registry.start_session(game["game_id"], ["S1"])


def test_win_completes_the_session(sequence, start, registry, teams, clock):
    start()
    sid = sequence.sequence_state("g1")["session_id"]
    scan(sequence, "R1", "A")
    scan(sequence, "R1", "B")
    clock.advance(3)
    scan(sequence, "R1", "C")
    assert registry.active_session() is None
    session = registry.get_session(sid)
    assert session["status"] == "completed"
    assert session["winner_team_id"] == teams["Red"]
    assert session["won_ms"] == session["end_ms"] == clock()

    # the slot is free again for the next game
    sequence.start_sequence_game(_config(game_id="g2"))
    assert sequence.sequence_state("g2")["status"] == "active"


def test_finish_completes_the_session(sequence, start, registry):
    start()
    sid = sequence.sequence_state("g1")["session_id"]
    sequence.finish_sequence_game("g1")
    session = registry.get_session(sid)
    assert session["status"] == "completed"
    assert session["winner_team_id"] is None
    assert registry.active_session() is None


def test_stopped_session_ends_the_game(sequence, start, control):
    start()
    control.stop_session(sequence.sequence_state("g1")["session_id"])
    r = scan(sequence, "R1", "A")
    assert r.event is Outcome.IGNORED
    assert r.reason == "game_over"
