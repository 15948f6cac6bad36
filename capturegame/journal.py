"""
capturegame/journal.py
----------------------
Outcome notifier plumbing: every engine event (control change, win, sequence
broadcast) goes through one EventHub which

- keeps a bounded in-memory ring for debugging / late joiners,
- appends a row to `game_events` when journaling is enabled,
- fans the event out to subscribers (SSE queues, lighting, tests).

Delivery is best-effort: a failing subscriber or a locked database is logged
and never reaches the scan that produced the event.
"""

from __future__ import annotations
import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .db_schema import connect, now_ms

log = logging.getLogger("capture.journal")

Subscriber = Callable[[Dict[str, Any]], None]


class EventHub:
    def __init__(self, db_path: str | Path, enabled: bool = True, ring_size: int = 500,
                 timeout_s: float = 5.0):
        self.db_path = str(db_path)
        self.enabled = bool(enabled)
        self.ring_size = max(1, int(ring_size))
        self.timeout_s = timeout_s
        self._ring: deque = deque(maxlen=self.ring_size)
        self._subs: List[Subscriber] = []
        self._lock = threading.Lock()

    # ---------- subscribers ----------
    def subscribe(self, fn: Subscriber) -> Subscriber:
        with self._lock:
            self._subs.append(fn)
        return fn

    def unsubscribe(self, fn: Subscriber) -> None:
        with self._lock:
            if fn in self._subs:
                self._subs.remove(fn)

    # ---------- emit ----------
    def emit(self, type_: str, scope: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        ev = {"ts_ms": now_ms(), "type": type_, "scope": scope, **payload}
        with self._lock:
            self._ring.append(ev)
            subs = list(self._subs)

        if self.enabled:
            self._persist(ev)

        for fn in subs:
            try:
                fn(ev)
            except Exception:
                log.exception("subscriber_failed", extra={"event_type": type_})
        return ev

    def _persist(self, ev: Dict[str, Any]) -> None:
        try:
            cx = connect(self.db_path, self.timeout_s)
            try:
                cx.execute(
                    "INSERT INTO game_events(ts_ms, type, scope, payload_json) VALUES(?,?,?,?)",
                    (ev["ts_ms"], ev["type"], ev["scope"], json.dumps(ev, default=str)),
                )
            finally:
                cx.close()
        except Exception:
            log.warning("journal_write_failed", extra={"event_type": ev["type"]}, exc_info=True)

    # ---------- queries ----------
    def recent(self, limit: int = 50, type_: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [e for e in self._ring if type_ is None or e["type"] == type_]
        return rows[-max(0, int(limit)):] if limit else []
