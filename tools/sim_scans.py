#!/usr/bin/env python3
"""
Scan simulator for a running capture-station server.

koth      registers teams/stations/badges, starts a KOTH session and fires
          random captures at --rate scans per second until the game is won
          or you hit Ctrl-C.
sequence  starts a sequence game and walks each team through the stations,
          with an occasional wrong station thrown in.

  python tools/sim_scans.py koth --teams 3 --stations 4 --minutes 0.5
  python tools/sim_scans.py sequence --teams 2 --stations 4
"""

from __future__ import annotations

import argparse
import random
import sys
import time
import uuid
from typing import Dict, List

import httpx


def _ok(r: httpx.Response) -> dict:
    if r.status_code >= 400:
        print(f"!! {r.request.method} {r.request.url} -> {r.status_code} {r.text}", file=sys.stderr)
        r.raise_for_status()
    return r.json()


def seed(client: httpx.Client, n_teams: int, n_stations: int) -> tuple[List[dict], List[str], Dict[int, str]]:
    palette = ["#ff3b30", "#007aff", "#34c759", "#ffcc00", "#af52de", "#ff9500"]
    existing = {t["name"]: t for t in _ok(client.get("/api/teams"))["teams"]}
    teams = []
    for i in range(n_teams):
        name = f"Team {i + 1}"
        teams.append(existing.get(name) or _ok(client.post(
            "/api/teams", json={"name": name, "color": palette[i % len(palette)]})))

    stations = []
    for i in range(n_stations):
        st = _ok(client.post("/api/stations", json={"uuid": f"ST-{i + 1:02d}", "name": f"Station {i + 1}"}))
        stations.append(st["uuid"])

    badges = {}
    for t in teams:
        uid = f"SIM{t['team_id']:04d}"
        _ok(client.post("/api/badges/assign", json={"rfid_uid": uid, "team_id": t["team_id"],
                                                   "player_name": f"Runner {t['team_id']}"}))
        badges[t["team_id"]] = uid
    return teams, stations, badges


def stop_active_session(client: httpx.Client) -> None:
    """Only one game (KOTH or sequence) may run at a time."""
    active = _ok(client.get("/api/sessions/active"))["session"]
    if active:
        _ok(client.post(f"/api/sessions/{active['session_id']}/stop"))


def run_koth(client: httpx.Client, args: argparse.Namespace) -> None:
    teams, stations, badges = seed(client, args.teams, args.stations)
    game = _ok(client.post("/api/games", json={"name": "Sim KOTH", "control_minutes_to_win": args.minutes}))
    stop_active_session(client)
    session = _ok(client.post("/api/sessions", json={"game_id": game["game_id"], "station_ids": stations}))
    sid = session["session_id"]
    print(f"session {sid} over {len(stations)} stations, {args.minutes} min to win")

    delay = 1.0 / max(0.1, args.rate)
    while True:
        team = random.choice(teams)
        station = random.choice(stations)
        res = _ok(client.post("/api/rfid-scan", json={"rfid_uid": badges[team["team_id"]], "station_id": station}))
        ctl = res.get("control") or {}
        if ctl.get("status") == "changed":
            print(f"{station}: {ctl.get('old_team_id')} -> {ctl.get('new_team_id')} "
                  f"(held {ctl.get('closed_duration_seconds')}s)")
        winner = _ok(client.get(f"/api/sessions/{sid}/winner"))["winner"]
        if winner:
            print(f"WINNER: {winner['name']}")
            break
        time.sleep(delay)

    for row in _ok(client.get(f"/api/sessions/{sid}/standings"))["standings"]:
        print(f"  {row['name']:<10} {row['control_seconds']:>5}s {row['percentage']:>6.2f}%")


def run_sequence(client: httpx.Client, args: argparse.Namespace) -> None:
    teams, stations, badges = seed(client, args.teams, args.stations)
    game_id = f"sim-{uuid.uuid4().hex[:8]}"
    stop_active_session(client)
    _ok(client.post("/api/sequence-games", json={
        "game_id": game_id,
        "sequence": stations,
        "defender_reset": {"mode": "lock_current", "cooldown_sec": 0},
    }))
    print(f"sequence game {game_id}: {' -> '.join(stations)}")

    delay = 1.0 / max(0.1, args.rate)
    cursor = {t["team_id"]: 0 for t in teams}
    while True:
        team = random.choice(teams)
        tid = team["team_id"]
        station = stations[cursor[tid] % len(stations)]
        if random.random() < args.wrong:
            station = random.choice(stations)
        res = _ok(client.post("/api/sequence-scan", json={
            "scan_id": uuid.uuid4().hex, "game_id": game_id,
            "station_id": station, "rfid_uid": badges[tid],
        }))
        prog = res.get("team_progress") or {}
        cursor[tid] = int(prog.get("idx", 0))
        print(f"{team['name']:<8} @ {station}: {res['event']:<13} idx={prog.get('idx')}")
        if res["event"] == "WIN" or res.get("reason") == "game_over":
            break
        time.sleep(delay)
    state = _ok(client.get(f"/api/sequence-games/{game_id}"))
    print(f"winner team_id={state['winner_team_id']}")


def _parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Capture-station scan simulator")
    ap.add_argument("--url", default="http://127.0.0.1:8000", help="Server base URL")
    ap.add_argument("--teams", type=int, default=3)
    ap.add_argument("--stations", type=int, default=4)
    ap.add_argument("--rate", type=float, default=2.0, help="Scans per second")
    sub = ap.add_subparsers(dest="mode", required=True)
    k = sub.add_parser("koth")
    k.add_argument("--minutes", type=float, default=0.5, help="Control minutes to win")
    s = sub.add_parser("sequence")
    s.add_argument("--wrong", type=float, default=0.1, help="Probability of a wrong-station scan")
    return ap.parse_args()


def main() -> int:
    args = _parse_args()
    with httpx.Client(base_url=args.url, timeout=5.0) as client:
        try:
            if args.mode == "koth":
                run_koth(client, args)
            else:
                run_sequence(client, args)
        except KeyboardInterrupt:
            print("\nstopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
