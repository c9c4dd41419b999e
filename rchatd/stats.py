"""Statistics tracking and reporting for the chat hub."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable


class StatsManager:
    """
    Hub counters and the formatted stats report.

    Tracks counters for:
    - Bytes and packets in/out
    - Handshakes and authentication failures
    - Messages sent, fan-out pushes and replays
    - Errors, rate limiting and ping activity
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "handshakes": 0,
            "auth_failed": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "msgs_sent": 0,
            "msgs_rejected": 0,
            "fanout_pushes": 0,
            "fanout_dropped": 0,
            "conns_dropped": 0,
            "replayed": 0,
            "status_updates": 0,
            "joins": 0,
            "parts": 0,
            "pings_in": 0,
            "pongs_in": 0,
            "pings_out": 0,
            "pongs_out": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, sections: dict[str, Callable[[], dict[str, Any]]] | None = None) -> str:
        """Human-readable report; ``sections`` adds component ``get_stats()`` output."""
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        c = self.snapshot()

        lines: list[str] = [f"rchatd {__version__} stats", f"uptime_s={uptime_s:.1f}"]
        for name, getter in (sections or {}).items():
            values = getter()
            lines.append(name + ": " + " ".join(f"{k}={v}" for k, v in values.items()))

        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c["pkts_in"], c["pkts_bad"], c["bytes_in"], c["bytes_out"]
            )
        )
        lines.append(
            "auth: handshakes={} failed={}".format(c["handshakes"], c["auth_failed"])
        )
        lines.append(
            "messages: sent={} rejected={} pushed={} dropped={} replayed={}".format(
                c["msgs_sent"],
                c["msgs_rejected"],
                c["fanout_pushes"],
                c["fanout_dropped"],
                c["replayed"],
            )
        )
        lines.append(
            "events: joins={} parts={} status_updates={} errors_sent={} rate_limited={}".format(
                c["joins"],
                c["parts"],
                c["status_updates"],
                c["errors_sent"],
                c["rate_limited"],
            )
        )
        lines.append(
            "pings: in={} out={} pongs: in={} out={}".format(
                c["pings_in"], c["pings_out"], c["pongs_in"], c["pongs_out"]
            )
        )
        return "\n".join(lines)
