"""Doctor report and self-overhead measurement."""

from __future__ import annotations

import os
import platform
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import psutil

from siliconmon_telemetry.errors import TelemetryError
from siliconmon_telemetry.hardware import HardwareProfile
from siliconmon_telemetry.sources import DiskCounterSource, NetworkCounterSource, ProcessTableSource

from .config import AppConfig, config_path
from .logging_setup import log_dir


def is_privileged() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return bool(geteuid is not None and geteuid() == 0)


def _probe_counters() -> dict[str, Any]:
    results: dict[str, Any] = {}
    for source in (ProcessTableSource(), DiskCounterSource(), NetworkCounterSource()):
        try:
            block = source.next_block(timeout=1.0)
        except TelemetryError as exc:
            results[source.kind.value] = {"available": False, "error": str(exc)}
        else:
            results[source.kind.value] = {"available": True, "counters": len(block.counters or {})}
    return results


def build_doctor_payload(cfg: AppConfig, profile: HardwareProfile | None = None) -> dict[str, Any]:
    command = cfg.power_report.command
    return {
        "ts_utc": datetime.now(timezone.utc).isoformat(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "psutil": psutil.__version__,
        "privileged": is_privileged(),
        "power_report": {
            "enabled": cfg.power_report.enabled,
            "command": command,
            "resolved": shutil.which(command),
        },
        "counters": _probe_counters(),
        "hardware": asdict(profile) if profile is not None else None,
        "config_path": str(config_path()),
        "log_dir": str(log_dir()),
        "config": asdict(cfg),
    }


@dataclass(frozen=True)
class Footprint:
    cpu_percent: float
    rss_mb: float


class SelfMonitor:
    """Measures the monitor's own CPU and memory use."""

    def __init__(self) -> None:
        self._process = psutil.Process()
        # Prime non-blocking CPU measurement.
        self._process.cpu_percent(interval=None)

    def sample(self) -> Footprint:
        try:
            cpu = float(self._process.cpu_percent(interval=None))
            rss_mb = float(self._process.memory_info().rss) / (1024 * 1024)
        except psutil.Error:
            return Footprint(cpu_percent=0.0, rss_mb=0.0)
        return Footprint(cpu_percent=cpu, rss_mb=rss_mb)
