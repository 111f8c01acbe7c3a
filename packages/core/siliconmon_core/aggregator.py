"""Merge per-source samples into one immutable SystemSnapshot per cycle."""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Iterable

from siliconmon_telemetry.hardware import HardwareProfile
from siliconmon_telemetry.models import MetricSample, MetricValue, SourceKind, SystemSnapshot, core_key

# Cumulative counters; each yields a derived "<key>_per_s" rate.
CUMULATIVE_KEYS = (
    "disk.bytes_read",
    "disk.bytes_written",
    "disk.reads",
    "disk.writes",
    "net.bytes_sent",
    "net.bytes_recv",
    "net.packets_sent",
    "net.packets_recv",
)

_CORE_KEY_RE = re.compile(r"^cpu\.core\[(\d+)\]\.(freq_mhz|active_pct)$")


def normalize_pct(value: float, capacity: float) -> float:
    """Map ``value`` onto [0, 100] against ``capacity``, clamped at both ends."""
    if capacity <= 0:
        return 0.0
    return min(max(value / capacity * 100.0, 0.0), 100.0)


def counter_rate(current: float, previous: float, elapsed_s: float) -> float | None:
    """Rate of change of a cumulative counter; resets count as zero."""
    if elapsed_s <= 0:
        return None
    return max((current - previous) / elapsed_s, 0.0)


class Aggregator:
    """Builds snapshots from one cycle's samples and the previous snapshot.

    Holds no state between calls: the previous snapshot is passed in by the
    caller and is the only denominator for rate computation.
    """

    def __init__(self, profile: HardwareProfile, clock=time.monotonic) -> None:
        self.profile = profile
        self._clock = clock

    def aggregate(
        self,
        samples: Iterable[MetricSample],
        previous: SystemSnapshot | None = None,
        degraded: Iterable[SourceKind] = (),
        now: float | None = None,
    ) -> SystemSnapshot:
        previous = previous or SystemSnapshot.empty()
        now = self._clock() if now is None else now

        fresh: dict[str, MetricValue] = {}
        fresh_at: dict[str, float] = {}
        # Ascending timestamps: the most recent duplicate is applied last and wins.
        for sample in sorted(samples, key=lambda s: s.timestamp):
            for key, value in sample.fields.items():
                fresh[key] = value
                fresh_at[key] = sample.timestamp

        self._derive_rates(fresh, fresh_at, previous)
        self._derive_utilization(fresh, fresh_at)

        values: dict[str, MetricValue] = dict(previous.values)
        observed_at: dict[str, float] = dict(previous.observed_at)
        missed: dict[str, int] = {key: previous.missed.get(key, 0) + 1 for key in values}

        for key, value in fresh.items():
            values[key] = value
            observed_at[key] = fresh_at[key]
            missed[key] = 0

        return SystemSnapshot(
            generation=previous.generation + 1,
            timestamp=now,
            captured_at=datetime.now(timezone.utc),
            values=values,
            observed_at=observed_at,
            missed=missed,
            degraded=frozenset(degraded),
        )

    def _derive_rates(self, fresh: dict, fresh_at: dict, previous: SystemSnapshot) -> None:
        for key in CUMULATIVE_KEYS:
            if key not in fresh:
                continue
            prev_value = previous.number(key)
            prev_at = previous.observed_at.get(key)
            if prev_value is None or prev_at is None:
                continue
            rate = counter_rate(float(fresh[key]), prev_value, fresh_at[key] - prev_at)
            if rate is not None:
                fresh[f"{key}_per_s"] = rate
                fresh_at[f"{key}_per_s"] = fresh_at[key]

    def _derive_utilization(self, fresh: dict, fresh_at: dict) -> None:
        profile = self.profile

        def put(src: str, dst: str, capacity: float) -> None:
            value = fresh.get(src)
            if value is None:
                return
            fresh[dst] = normalize_pct(float(value), capacity)
            fresh_at[dst] = fresh_at[src]

        for key in list(fresh):
            m = _CORE_KEY_RE.match(key)
            if m is None:
                continue
            core_id = int(m.group(1))
            if m.group(2) == "freq_mhz":
                put(key, core_key(core_id, "freq_pct"), profile.core_max_mhz(core_id))
            else:
                put(key, core_key(core_id, "util_pct"), 100.0)

        put("cpu.e_cluster.active_pct", "cpu.e_cluster.util_pct", 100.0)
        put("cpu.p_cluster.active_pct", "cpu.p_cluster.util_pct", 100.0)
        put("cpu.e_cluster.freq_mhz", "cpu.e_cluster.freq_pct", profile.e_core_max_mhz)
        put("cpu.p_cluster.freq_mhz", "cpu.p_cluster.freq_pct", profile.p_core_max_mhz)
        put("gpu.active_pct", "gpu.util_pct", 100.0)
        put("gpu.freq_mhz", "gpu.freq_pct", profile.gpu_max_mhz)
        put("ane.power_mw", "ane.util_pct", profile.ane_max_power_mw)

        if "mem.used_bytes" in fresh and "mem.total_bytes" in fresh:
            used = float(fresh["mem.used_bytes"]) + float(fresh.get("swap.used_bytes", 0.0))
            total = float(fresh["mem.total_bytes"]) + float(fresh.get("swap.total_bytes", 0.0))
            fresh["mem.used_pct"] = normalize_pct(used, total)
            fresh_at["mem.used_pct"] = fresh_at["mem.used_bytes"]
