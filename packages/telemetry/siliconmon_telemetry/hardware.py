"""Hardware profile resolved once at startup and passed down to the pipeline."""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass

import psutil


logger = logging.getLogger("siliconmon.hardware")

# M1 defaults; newer chips should override through configuration.
DEFAULT_E_CORE_MAX_MHZ = 2064.0
DEFAULT_P_CORE_MAX_MHZ = 3228.0
DEFAULT_GPU_MAX_MHZ = 1278.0
DEFAULT_ANE_MAX_POWER_MW = 8000.0


@dataclass(frozen=True)
class HardwareProfile:
    name: str
    e_core_count: int
    p_core_count: int
    gpu_core_count: str
    e_core_max_mhz: float = DEFAULT_E_CORE_MAX_MHZ
    p_core_max_mhz: float = DEFAULT_P_CORE_MAX_MHZ
    gpu_max_mhz: float = DEFAULT_GPU_MAX_MHZ
    ane_max_power_mw: float = DEFAULT_ANE_MAX_POWER_MW

    @property
    def logical_cores(self) -> int:
        return self.e_core_count + self.p_core_count

    def core_class(self, core_id: int) -> str:
        """Logical ids below the E-core count are efficiency cores."""
        return "E" if core_id < self.e_core_count else "P"

    def core_ids(self, core_class: str) -> range:
        if core_class == "E":
            return range(0, self.e_core_count)
        return range(self.e_core_count, self.logical_cores)

    def core_max_mhz(self, core_id: int) -> float:
        return self.e_core_max_mhz if self.core_class(core_id) == "E" else self.p_core_max_mhz


def _run(args: list[str], timeout: float) -> str | None:
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def sysctl_value(name: str, timeout: float = 2.0) -> str | None:
    out = _run(["sysctl", "-n", name], timeout)
    if out is None:
        return None
    value = out.strip()
    return value or None


def sysctl_int(name: str, timeout: float = 2.0) -> int | None:
    value = sysctl_value(name, timeout)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def gpu_core_count(timeout: float = 10.0) -> str | None:
    out = _run(["system_profiler", "-detailLevel", "basic", "SPDisplaysDataType"], timeout)
    if out is None:
        return None
    for line in out.splitlines():
        if "Total Number of Cores" in line:
            parts = line.split(": ", 1)
            if len(parts) > 1:
                return parts[1].strip()
    return None


def detect_hardware(
    e_core_max_mhz: float = DEFAULT_E_CORE_MAX_MHZ,
    p_core_max_mhz: float = DEFAULT_P_CORE_MAX_MHZ,
    gpu_max_mhz: float = DEFAULT_GPU_MAX_MHZ,
    ane_max_power_mw: float = DEFAULT_ANE_MAX_POWER_MW,
    e_core_count: int | None = None,
    p_core_count: int | None = None,
    probe_gpu: bool = True,
) -> HardwareProfile:
    on_mac = platform.system() == "Darwin"

    name = (sysctl_value("machdep.cpu.brand_string") if on_mac else None) or platform.processor() or "Unknown"
    if e_core_count is None:
        e_core_count = (sysctl_int("hw.perflevel1.logicalcpu") if on_mac else None) or 0
    if p_core_count is None:
        p_core_count = sysctl_int("hw.perflevel0.logicalcpu") if on_mac else None
        if p_core_count is None:
            p_core_count = max((psutil.cpu_count(logical=True) or 0) - e_core_count, 0)

    gpu_cores = (gpu_core_count() if on_mac and probe_gpu else None) or "?"

    profile = HardwareProfile(
        name=name,
        e_core_count=int(e_core_count),
        p_core_count=int(p_core_count),
        gpu_core_count=gpu_cores,
        e_core_max_mhz=float(e_core_max_mhz),
        p_core_max_mhz=float(p_core_max_mhz),
        gpu_max_mhz=float(gpu_max_mhz),
        ane_max_power_mw=float(ane_max_power_mw),
    )
    logger.info(
        "hardware profile %s e=%d p=%d gpu=%s",
        profile.name,
        profile.e_core_count,
        profile.p_core_count,
        profile.gpu_core_count,
        extra={"event": "hardware_detected"},
    )
    return profile
