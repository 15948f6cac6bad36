# capturegame/feedback.py
# -----------------------------------------------------------------------------
# Station feedback: outcome -> LED signal, and OSC OUT to the station lights.
# The mapping is total; anything unrecognised gets the fallback signal.
# OSC frames go out over UDP via python-osc's SimpleUDPClient.
# -----------------------------------------------------------------------------

from __future__ import annotations
import logging
import queue
import threading
import time
from typing import Any, Dict, Optional, Union

from pythonosc.udp_client import SimpleUDPClient

from .models import Outcome, StationFeedback

log = logging.getLogger("capture.feedback")

FEEDBACK: Dict[Outcome, StationFeedback] = {
    Outcome.PROGRESS:      StationFeedback(led_color="green",  blink_ms=1000),
    Outcome.HOLDING:       StationFeedback(led_color="yellow", blink_ms=300),
    Outcome.WRONG_ORDER:   StationFeedback(led_color="red",    blink_ms=600),
    Outcome.DEFENDER_LOCK: StationFeedback(led_color="purple", blink_ms=600),
    Outcome.WIN:           StationFeedback(led_color="green",  blink_ms=2000),
    Outcome.ALREADY_DONE:  StationFeedback(led_color="white",  blink_ms=200),
}
FALLBACK = StationFeedback(led_color="blue", blink_ms=500)


def station_feedback(outcome: Union[Outcome, str, None]) -> StationFeedback:
    try:
        key = Outcome(outcome)
    except ValueError:
        return FALLBACK.model_copy()
    return FEEDBACK.get(key, FALLBACK).model_copy()


class OscStationOut:
    def __init__(self, cfg: Optional[Dict[str, Any]]):
        # cfg structure:
        # integrations.feedback.osc_out: { enabled, host, port, address_prefix, send_repeat{count, interval_ms} }
        self.enabled = bool(cfg and cfg.get("enabled"))
        self.host = (cfg or {}).get("host", "127.0.0.1")
        self.port = int((cfg or {}).get("port", 9000))
        self.prefix = str((cfg or {}).get("address_prefix", "/capture/station")).rstrip("/")

        rep = (cfg or {}).get("send_repeat") or {}
        self.repeat_count = int(rep.get("count", 1))
        self.repeat_interval = float(rep.get("interval_ms", 0)) / 1000.0

        self._client: Optional[SimpleUDPClient] = None
        # frames waiting for the sender thread; None tells it to exit
        self._q: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._t: Optional[threading.Thread] = None

    def start(self) -> None:
        if not self.enabled:
            return
        if self._client is None:
            self._client = SimpleUDPClient(self.host, self.port)
        if self._t is None or not self._t.is_alive():
            self._t = threading.Thread(target=self._run_loop, name="OscStationOut", daemon=True)
            self._t.start()

    def stop(self) -> None:
        if self._t is not None:
            self._q.put(None)
            self._t.join(timeout=2.0)
            self._t = None
        self._client = None

    def _run_loop(self) -> None:
        while True:
            item = self._q.get()
            if item is None:
                return
            self._send(*item)

    def address_for(self, station_id: str, color: str) -> str:
        return f"{self.prefix}/{station_id}/{color}"

    # --------------------- internal helper ---------------------

    def _send(self, path: str, value: float) -> None:
        """Fire-and-forget with optional repeats for UDP resiliency."""
        if not self.enabled or not self._client:
            return
        sends = max(1, self.repeat_count)
        for i in range(sends):
            try:
                self._client.send_message(path, float(value))
            except OSError:
                # lights offline must never fail a scan
                log.warning("osc_send_failed", extra={"path": path}, exc_info=True)
                return
            if i + 1 < sends and self.repeat_interval > 0:
                time.sleep(self.repeat_interval)

    # ----------------------- public API -----------------------

    def send_feedback(self, station_id: str, fb: StationFeedback) -> None:
        self._send(self.address_for(station_id, fb.led_color), float(fb.blink_ms))

    def on_event(self, ev: Dict[str, Any]) -> None:
        """
        EventHub subscriber: forward any event that carries station feedback.
        Runs on the emitting thread, so frames are queued for the sender thread
        and repeats never stall a scan. Without a running sender it sends inline.
        """
        fb = ev.get("station_feedback")
        station_id = ev.get("station_id")
        if not fb or not station_id:
            return
        signal = StationFeedback(**fb)
        if self._t is not None and self._t.is_alive():
            self._q.put((self.address_for(str(station_id), signal.led_color), float(signal.blink_ms)))
        else:
            self.send_feedback(str(station_id), signal)
