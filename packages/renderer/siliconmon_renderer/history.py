"""In-memory scrolling window of recent metric values for charts and averages."""

from __future__ import annotations

from collections import deque
from typing import Iterable

from siliconmon_telemetry.models import SystemSnapshot

DEFAULT_KEYS = (
    "cpu.e_cluster.util_pct",
    "cpu.p_cluster.util_pct",
    "gpu.util_pct",
    "ane.util_pct",
    "mem.used_pct",
)


class MetricHistory:
    """Keeps (timestamp, value) pairs per metric for the last ``window_s`` seconds.

    Records at most one point per snapshot generation, so redrawing the same
    snapshot twice does not skew averages.
    """

    def __init__(self, window_s: float = 120.0, keys: Iterable[str] = DEFAULT_KEYS) -> None:
        self.window_s = float(window_s)
        self.keys = tuple(keys)
        self._series: dict[str, deque[tuple[float, float]]] = {k: deque() for k in self.keys}
        self._last_generation = 0

    def record(self, snapshot: SystemSnapshot) -> bool:
        if snapshot.is_empty or snapshot.generation <= self._last_generation:
            return False
        self._last_generation = snapshot.generation
        now = snapshot.timestamp
        for key in self.keys:
            value = snapshot.number(key)
            series = self._series[key]
            if value is not None:
                series.append((now, value))
            self._trim(series, now)
        return True

    def _trim(self, series: deque[tuple[float, float]], now: float) -> None:
        cutoff = now - self.window_s
        while series and series[0][0] < cutoff:
            series.popleft()

    def values(self, key: str) -> list[float]:
        return [v for _, v in self._series.get(key, ())]

    def average(self, key: str) -> float:
        series = self._series.get(key)
        if not series:
            return 0.0
        return sum(v for _, v in series) / len(series)


SPARK = " ▁▂▃▄▅▆▇█"


def sparkline(values: list[float], width: int, lo: float = 0.0, hi: float = 100.0) -> str:
    """Render the newest ``width`` values as block characters, left-padded."""
    if width <= 0:
        return ""
    tail = values[-width:]
    span = max(hi - lo, 1e-9)
    chars = []
    for v in tail:
        level = int(round((min(max(v, lo), hi) - lo) / span * (len(SPARK) - 1)))
        chars.append(SPARK[level])
    return " " * (width - len(chars)) + "".join(chars)
