"""Persistent monitor settings schema and load/save helpers."""

from __future__ import annotations

import json
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from siliconmon_telemetry.hardware import (
    DEFAULT_ANE_MAX_POWER_MW,
    DEFAULT_E_CORE_MAX_MHZ,
    DEFAULT_GPU_MAX_MHZ,
    DEFAULT_P_CORE_MAX_MHZ,
)
from siliconmon_telemetry.sources import DEFAULT_SAMPLERS


CONFIG_VERSION = 2


@dataclass
class SamplingConfig:
    period_ms: int = 500
    source_deadline_ms: int = 450


@dataclass
class PowerReportConfig:
    enabled: bool = True
    command: str = "powermetrics"
    samplers: str = DEFAULT_SAMPLERS
    interval_ms: int = 500


@dataclass
class RecoveryConfig:
    max_restarts: int = 5
    backoff_base_ms: int = 250
    backoff_cap_ms: int = 4000


@dataclass
class CapacityConfig:
    e_core_max_mhz: float = DEFAULT_E_CORE_MAX_MHZ
    p_core_max_mhz: float = DEFAULT_P_CORE_MAX_MHZ
    gpu_max_mhz: float = DEFAULT_GPU_MAX_MHZ
    ane_max_power_mw: float = DEFAULT_ANE_MAX_POWER_MW
    e_core_count: int | None = None
    p_core_count: int | None = None


@dataclass
class UiConfig:
    theme: str = "classic"
    refresh_ms: int = 250
    history_seconds: int = 120


@dataclass
class DiagnosticsConfig:
    keep_log_files: int = 7


@dataclass
class AppConfig:
    config_version: int = CONFIG_VERSION
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    power_report: PowerReportConfig = field(default_factory=PowerReportConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    ui: UiConfig = field(default_factory=UiConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)


def config_root() -> Path:
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        return base / "siliconmon"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "siliconmon"
    return Path.home() / ".config" / "siliconmon"


def config_path() -> Path:
    return config_root() / "config.json"


def _merge(dataclass_type, raw: dict[str, Any]):
    defaults = dataclass_type()  # type: ignore[misc]
    if not isinstance(raw, dict):
        return defaults
    for k, v in raw.items():
        if hasattr(defaults, k):
            setattr(defaults, k, v)
    return defaults


def _normalize_sampling(cfg: AppConfig) -> None:
    cfg.sampling.period_ms = max(100, min(5000, int(cfg.sampling.period_ms)))
    cfg.sampling.source_deadline_ms = max(10, min(cfg.sampling.period_ms, int(cfg.sampling.source_deadline_ms)))


def _normalize_power_report(cfg: AppConfig) -> None:
    cfg.power_report.interval_ms = max(100, min(5000, int(cfg.power_report.interval_ms)))
    if not str(cfg.power_report.command).strip():
        cfg.power_report.command = "powermetrics"
    if not str(cfg.power_report.samplers).strip():
        cfg.power_report.samplers = DEFAULT_SAMPLERS


def _normalize_recovery(cfg: AppConfig) -> None:
    cfg.recovery.max_restarts = max(0, int(cfg.recovery.max_restarts))
    cfg.recovery.backoff_base_ms = max(10, int(cfg.recovery.backoff_base_ms))
    cfg.recovery.backoff_cap_ms = max(cfg.recovery.backoff_base_ms, int(cfg.recovery.backoff_cap_ms))


def _normalize_capacity(cfg: AppConfig) -> None:
    cap = cfg.capacity
    cap.e_core_max_mhz = float(max(1.0, cap.e_core_max_mhz))
    cap.p_core_max_mhz = float(max(1.0, cap.p_core_max_mhz))
    cap.gpu_max_mhz = float(max(1.0, cap.gpu_max_mhz))
    cap.ane_max_power_mw = float(max(1.0, cap.ane_max_power_mw))
    for name in ("e_core_count", "p_core_count"):
        value = getattr(cap, name)
        setattr(cap, name, None if value is None else max(0, int(value)))


def _normalize_ui(cfg: AppConfig) -> None:
    cfg.ui.refresh_ms = max(50, min(2000, int(cfg.ui.refresh_ms)))
    cfg.ui.history_seconds = max(10, min(3600, int(cfg.ui.history_seconds)))


def _migrate(raw: dict[str, Any]) -> dict[str, Any]:
    version = int(raw.get("config_version", 1))
    data = dict(raw)

    if version < 2:
        # v1 kept a flat "interval_ms" used for both the report tool and the scheduler.
        interval = data.pop("interval_ms", None)
        if interval is not None:
            data.setdefault("sampling", {}).setdefault("period_ms", interval)
            data.setdefault("power_report", {}).setdefault("interval_ms", interval)
        data.setdefault("recovery", {})
        data.setdefault("capacity", {})
        data["config_version"] = 2

    return data


def load_config(path: Path | None = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()

    data = _migrate(raw)
    cfg = AppConfig(
        config_version=int(data.get("config_version", CONFIG_VERSION)),
        sampling=_merge(SamplingConfig, data.get("sampling", {})),
        power_report=_merge(PowerReportConfig, data.get("power_report", {})),
        recovery=_merge(RecoveryConfig, data.get("recovery", {})),
        capacity=_merge(CapacityConfig, data.get("capacity", {})),
        ui=_merge(UiConfig, data.get("ui", {})),
        diagnostics=_merge(DiagnosticsConfig, data.get("diagnostics", {})),
    )

    normalize(cfg)
    return cfg


def normalize(cfg: AppConfig) -> AppConfig:
    _normalize_sampling(cfg)
    _normalize_power_report(cfg)
    _normalize_recovery(cfg)
    _normalize_capacity(cfg)
    _normalize_ui(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    cfg.config_version = CONFIG_VERSION
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True), encoding="utf-8")
    return path
