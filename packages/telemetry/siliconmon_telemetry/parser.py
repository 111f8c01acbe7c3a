"""Stateless parsing of raw report text and counter reads into metric samples."""

from __future__ import annotations

import logging
import math
import re
import time
from typing import Callable, Mapping

from .errors import MalformedBlock
from .models import MetricSample, MetricValue, RawBlock, SourceKind, ThermalPressure, core_key


logger = logging.getLogger("siliconmon.parser")

KNOWN_COUNTER_KEYS: dict[SourceKind, frozenset[str]] = {
    SourceKind.PROCESS_TABLE: frozenset(
        {
            "mem.total_bytes",
            "mem.used_bytes",
            "mem.available_bytes",
            "swap.total_bytes",
            "swap.used_bytes",
            "proc.count",
        }
    ),
    SourceKind.DISK_COUNTERS: frozenset({"disk.bytes_read", "disk.bytes_written", "disk.reads", "disk.writes"}),
    SourceKind.NETWORK_COUNTERS: frozenset({"net.bytes_sent", "net.bytes_recv", "net.packets_sent", "net.packets_recv"}),
}

_CLUSTER_PREFIX = {"E": "cpu.e_cluster", "E0": "cpu.e_cluster", "P": "cpu.p_cluster", "P0": "cpu.p_cluster"}
_POWER_KEYS = {"CPU": "cpu.power_mw", "GPU": "gpu.power_mw", "ANE": "ane.power_mw"}
_POWER_SCALE = {"mW": 1.0, "W": 1000.0}

# Numbers are captured loosely so that a recognized line with a bad value
# still counts as recognized and only drops its own field.
_CORE_FREQ_RE = re.compile(r"^CPU\s+(\d+)\s+frequency:\s*(\S+?)\s*MHz\b")
_CORE_ACTIVE_RE = re.compile(r"^CPU\s+(\d+)\s+active residency:\s*(\S+?)%")
_CLUSTER_FREQ_RE = re.compile(r"^(\w+)-Cluster\s+HW active frequency:\s*(\S+?)\s*MHz\b")
_CLUSTER_ACTIVE_RE = re.compile(r"^(\w+)-Cluster\s+HW active residency:\s*(\S+?)%")
_GPU_FREQ_RE = re.compile(r"^GPU\s*(?:HW\s+)?active frequency:\s*(\S+?)\s*MHz\b")
_GPU_ACTIVE_RE = re.compile(r"^GPU\s*(?:HW\s+)?active residency:\s*(\S+?)%")
_POWER_RE = re.compile(r"^(CPU|GPU|ANE) Power:\s*(\S+?)\s*(mW|W)\b")
_COMBINED_RE = re.compile(r"^Combined Power \(CPU \+ GPU \+ ANE\):\s*(\S+?)\s*(mW|W)\b")
_NET_RE = re.compile(r"^(out|in):\s*(\S+?)\s*packets/s,\s*(\S+?)\s*bytes/s")
_DISK_RE = re.compile(r"^(read|write):\s*(\S+?)\s*ops/s,?\s*(\S+?)\s*KBytes/s")
_THERMAL_RE = re.compile(r"^Current pressure level:\s*(\w+)")


def _number(raw: str) -> float | None:
    try:
        value = float(raw)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


class _Fields:
    """Accumulates fields for one block, dropping values that fail to convert."""

    def __init__(self) -> None:
        self.values: dict[str, MetricValue] = {}
        self.recognized = 0
        self.dropped = 0

    def put(self, key: str | None, raw: str, scale: float = 1.0) -> None:
        if key is None:
            return
        value = _number(raw)
        if value is None:
            self.dropped += 1
            return
        self.values[key] = value * scale


def _line_core_freq(m: re.Match, out: _Fields) -> None:
    out.put(core_key(int(m.group(1)), "freq_mhz"), m.group(2))


def _line_core_active(m: re.Match, out: _Fields) -> None:
    out.put(core_key(int(m.group(1)), "active_pct"), m.group(2))


def _line_cluster_freq(m: re.Match, out: _Fields) -> None:
    prefix = _CLUSTER_PREFIX.get(m.group(1))
    out.put(f"{prefix}.freq_mhz" if prefix else None, m.group(2))


def _line_cluster_active(m: re.Match, out: _Fields) -> None:
    prefix = _CLUSTER_PREFIX.get(m.group(1))
    out.put(f"{prefix}.active_pct" if prefix else None, m.group(2))


def _line_gpu_freq(m: re.Match, out: _Fields) -> None:
    out.put("gpu.freq_mhz", m.group(1))


def _line_gpu_active(m: re.Match, out: _Fields) -> None:
    out.put("gpu.active_pct", m.group(1))


def _line_power(m: re.Match, out: _Fields) -> None:
    out.put(_POWER_KEYS[m.group(1)], m.group(2), _POWER_SCALE[m.group(3)])


def _line_combined(m: re.Match, out: _Fields) -> None:
    out.put("package.power_mw", m.group(1), _POWER_SCALE[m.group(2)])


def _line_net(m: re.Match, out: _Fields) -> None:
    direction = m.group(1)
    out.put(f"net.{direction}_packets_per_s", m.group(2))
    out.put(f"net.{direction}_bytes_per_s", m.group(3))


def _line_disk(m: re.Match, out: _Fields) -> None:
    direction = m.group(1)
    out.put(f"disk.{direction}_ops_per_s", m.group(2))
    out.put(f"disk.{direction}_bytes_per_s", m.group(3), 1024.0)


def _line_thermal(m: re.Match, out: _Fields) -> None:
    try:
        out.values["thermal.pressure"] = ThermalPressure(m.group(1))
    except ValueError:
        out.dropped += 1


_LINE_RULES: tuple[tuple[re.Pattern, Callable[[re.Match, _Fields], None]], ...] = (
    (_CORE_FREQ_RE, _line_core_freq),
    (_CORE_ACTIVE_RE, _line_core_active),
    (_CLUSTER_FREQ_RE, _line_cluster_freq),
    (_CLUSTER_ACTIVE_RE, _line_cluster_active),
    (_GPU_FREQ_RE, _line_gpu_freq),
    (_GPU_ACTIVE_RE, _line_gpu_active),
    (_POWER_RE, _line_power),
    (_COMBINED_RE, _line_combined),
    (_NET_RE, _line_net),
    (_DISK_RE, _line_disk),
    (_THERMAL_RE, _line_thermal),
)


def _parse_text(text: str) -> _Fields:
    out = _Fields()
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        for pattern, handler in _LINE_RULES:
            m = pattern.match(stripped)
            if m is not None:
                out.recognized += 1
                handler(m, out)
                break
    return out


def _parse_counters(source: SourceKind, counters: Mapping[str, float]) -> _Fields:
    out = _Fields()
    known = KNOWN_COUNTER_KEYS.get(source, frozenset())
    for key, raw in counters.items():
        if key not in known:
            continue
        out.recognized += 1
        out.put(key, str(raw))
    return out


class MetricParser:
    """Turns one RawBlock into a MetricSample.

    Unknown lines and counters are ignored. A block is rejected with
    MalformedBlock only when nothing in it is recognized; a recognized line
    whose number fails to convert drops just that field.
    """

    def parse(self, block: RawBlock) -> MetricSample:
        if block.text is not None:
            out = _parse_text(block.text)
        elif block.counters is not None:
            out = _parse_counters(block.source, block.counters)
        else:
            raise MalformedBlock(f"{block.source.value}: empty block")

        if out.recognized == 0:
            raise MalformedBlock(f"{block.source.value}: no recognizable lines")
        if out.dropped:
            logger.debug(
                "dropped %d unparsable fields from %s",
                out.dropped,
                block.source.value,
                extra={"event": "parse_partial"},
            )
        return MetricSample(source=block.source, timestamp=block.captured_at, fields=out.values)


def parse_report_text(text: str, source: SourceKind = SourceKind.POWER_REPORT) -> MetricSample:
    return MetricParser().parse(RawBlock(source=source, captured_at=time.monotonic(), text=text))
