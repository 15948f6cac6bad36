import threading

import pytest


def _by_team(rows):
    return {r.team_id: r for r in rows}


def test_percentages_against_threshold(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=100)
    control.handle_koth_scan("R1", "S1")
    clock.advance(40)
    control.handle_koth_scan("B1", "S2")
    clock.advance(10)

    rows = standings.compute_team_standings(session["session_id"])
    by = _by_team(rows)
    assert by[teams["Red"]].control_seconds == 50
    assert by[teams["Red"]].percentage == 50.0
    assert by[teams["Red"]].active_station_count == 1
    assert by[teams["Blue"]].control_seconds == 10
    assert by[teams["Blue"]].percentage == 10.0
    assert by[teams["Green"]].control_seconds == 0
    assert by[teams["Green"]].active_station_count == 0
    assert [r.team_id for r in rows] == [teams["Red"], teams["Blue"], teams["Green"]]


def test_percentage_is_capped(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=100)
    control.handle_koth_scan("R1", "S1")
    clock.advance(150)
    red = _by_team(standings.compute_team_standings(session["session_id"]))[teams["Red"]]
    assert red.control_seconds == 150
    assert red.percentage == 100.0


def test_closed_and_live_intervals_add_up(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=1000)
    sid = session["session_id"]
    control.handle_koth_scan("R1", "S1")
    clock.advance(30)
    control.handle_koth_scan("B1", "S1")
    clock.advance(15)
    control.handle_koth_scan("R1", "S1")
    control.handle_koth_scan("R1", "S2")
    clock.advance(5)

    by = _by_team(standings.compute_team_standings(sid))
    assert by[teams["Red"]].control_seconds == 30 + 5 + 5
    assert by[teams["Red"]].active_station_count == 2
    assert by[teams["Blue"]].control_seconds == 15

    closed = sum(r["control_duration_seconds"] for r in control.control_history(sid)
                 if not r["is_current_control"])
    live = sum(s.held_seconds for s in control.station_states(sid))
    assert closed + live == sum(r.control_seconds for r in by.values())


def test_completed_session_stops_accruing(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=1000)
    sid = session["session_id"]
    control.handle_koth_scan("R1", "S1")
    clock.advance(20)
    control.stop_session(sid)
    clock.advance(300)
    red = _by_team(standings.compute_team_standings(sid))[teams["Red"]]
    assert red.control_seconds == 20
    assert red.active_station_count == 0


def test_no_winner_below_threshold(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=60)
    control.handle_koth_scan("R1", "S1")
    clock.advance(59)
    assert standings.check_winner(session["session_id"]) is None


def test_winner_recorded_once_and_session_closed(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=60)
    sid = session["session_id"]
    control.handle_koth_scan("R1", "S1")
    clock.advance(60)

    winner = standings.check_winner(sid)
    assert winner["team_id"] == teams["Red"]
    assert winner["name"] == "Red"
    assert standings.check_winner(sid)["team_id"] == teams["Red"]

    assert len(control.hub.recent(type_="game_won")) == 1
    s = control.registry.get_session(sid)
    assert s["winner_team_id"] == teams["Red"]
    assert s["status"] == "completed"


def test_simultaneous_threshold_goes_to_lowest_team_id(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=60)
    control.handle_koth_scan("B1", "S2")
    control.handle_koth_scan("R1", "S1")
    clock.advance(60)
    assert standings.check_winner(session["session_id"])["team_id"] == teams["Red"]


def test_concurrent_checks_announce_one_win(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=60)
    sid = session["session_id"]
    control.handle_koth_scan("G1", "S1")
    clock.advance(61)

    n = 8
    barrier = threading.Barrier(n)
    winners, errors = [], []

    def worker():
        barrier.wait()
        try:
            winners.append(standings.check_winner(sid))
        except Exception as ex:
            errors.append(ex)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert {w["team_id"] for w in winners} == {teams["Green"]}
    assert len(control.hub.recent(type_="game_won")) == 1


def test_control_change_triggers_win_check(control, standings, clock, teams, start_koth):
    session = start_koth(seconds_to_win=60)
    control.after_change = standings.check_winner
    control.handle_koth_scan("R1", "S1")
    clock.advance(60)
    control.handle_koth_scan("B1", "S2")

    s = control.registry.get_session(session["session_id"])
    assert s["winner_team_id"] == teams["Red"]
    assert s["status"] == "completed"
    assert control.handle_koth_scan("B1", "S1").reason == "no_active_session"


def test_tick_evaluates_active_session(control, standings, clock, teams, start_koth):
    assert standings.tick() is None
    start_koth(seconds_to_win=10)
    control.handle_koth_scan("B1", "S1")
    assert standings.tick() is None
    clock.advance(10)
    assert standings.tick()["team_id"] == teams["Blue"]


def test_unknown_session_raises(standings):
    with pytest.raises(KeyError):
        standings.compute_team_standings(999)
    with pytest.raises(KeyError):
        standings.check_winner(999)
