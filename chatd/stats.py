"""Lifetime counters for the chatd hub, summarised in the log at shutdown."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .rooms import ChannelRegistry

# Summary line label -> counters printed on it, in order.
_SECTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("io", ("bytes_in", "bytes_out", "envelopes_in", "envelopes_out", "envelopes_bad")),
    (
        "events",
        ("joins", "joins_failed", "parts", "msgs_sequenced", "private_msgs", "history_requests"),
    ),
    ("identity", ("registrations", "identify_failed")),
    ("store", ("store_errors", "sequencing_races")),
)


class StatsManager:
    def __init__(self) -> None:
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None
        self._counters: dict[str, int] = {
            name: 0 for _, names in _SECTIONS for name in names
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        return self._counters.get(key, 0)

    def uptime_s(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic

    def format_stats(self, registry: ChannelRegistry | None = None) -> str:
        """Multi-line summary: uptime, room occupancy, then one line per counter group."""
        from . import __version__

        lines = [f"chatd {__version__} uptime_s={self.uptime_s():.1f}"]

        if registry is not None:
            rooms = registry.get_stats()
            line = f"rooms={rooms['rooms_total']} memberships={rooms['memberships']}"
            if rooms["top_rooms"]:
                line += " top=" + ",".join(f"{name}:{n}" for name, n in rooms["top_rooms"])
            lines.append(line)

        for label, names in _SECTIONS:
            values = " ".join(f"{name}={self.get(name)}" for name in names)
            lines.append(f"{label}: {values}")
        return "\n".join(lines)
