"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time


class StatsManager:
    """
    Collects relay counters.

    Tracks:
    - Connections accepted and connections that failed during setup
    - Joins, parts and renames
    - Inbound lines and relayed chat messages
    - Per-recipient deliveries and send failures
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "connections_accepted": 0,
            "connections_failed": 0,
            "joins": 0,
            "parts": 0,
            "renames": 0,
            "lines_in": 0,
            "msgs_relayed": 0,
            "deliveries": 0,
            "send_failures": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, *, sessions: int = 0) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"chatrelay {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            "sessions: live={} accepted={} failed={}".format(
                sessions,
                c.get("connections_accepted", 0),
                c.get("connections_failed", 0),
            )
        )
        lines.append(
            "events: joins={} parts={} renames={}".format(
                c.get("joins", 0),
                c.get("parts", 0),
                c.get("renames", 0),
            )
        )
        lines.append(
            "relay: lines_in={} msgs_relayed={} deliveries={} send_failures={}".format(
                c.get("lines_in", 0),
                c.get("msgs_relayed", 0),
                c.get("deliveries", 0),
                c.get("send_failures", 0),
            )
        )

        return "\n".join(lines)
