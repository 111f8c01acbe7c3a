"""Wiring of sources, aggregator, channel, and scheduler from configuration."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from siliconmon_telemetry.hardware import HardwareProfile, detect_hardware
from siliconmon_telemetry.sources import (
    DiskCounterSource,
    NetworkCounterSource,
    PowerReportProcess,
    ProcessTableSource,
    RawSourceReader,
    ReportReplaySource,
    powermetrics_command,
)

from .aggregator import Aggregator
from .channel import SnapshotChannel
from .config import AppConfig
from .scheduler import BackoffPolicy, SamplingScheduler


@dataclass
class Pipeline:
    profile: HardwareProfile
    channel: SnapshotChannel
    scheduler: SamplingScheduler


def profile_from_config(cfg: AppConfig, probe_gpu: bool = True) -> HardwareProfile:
    cap = cfg.capacity
    return detect_hardware(
        e_core_max_mhz=cap.e_core_max_mhz,
        p_core_max_mhz=cap.p_core_max_mhz,
        gpu_max_mhz=cap.gpu_max_mhz,
        ane_max_power_mw=cap.ane_max_power_mw,
        e_core_count=cap.e_core_count,
        p_core_count=cap.p_core_count,
        probe_gpu=probe_gpu,
    )


def build_readers(cfg: AppConfig, replay: Path | None = None) -> list[RawSourceReader]:
    readers: list[RawSourceReader] = []
    if replay is not None:
        readers.append(ReportReplaySource(replay, loop=True))
    elif cfg.power_report.enabled:
        pr = cfg.power_report
        if pr.command == "powermetrics":
            command = powermetrics_command(pr.interval_ms, pr.samplers)
        else:
            command = shlex.split(pr.command)
        readers.append(PowerReportProcess(command=command, interval_ms=pr.interval_ms))
    readers.extend([ProcessTableSource(), DiskCounterSource(), NetworkCounterSource()])
    return readers


def build_pipeline(
    cfg: AppConfig,
    profile: HardwareProfile | None = None,
    readers: Sequence[RawSourceReader] | None = None,
    replay: Path | None = None,
) -> Pipeline:
    profile = profile or profile_from_config(cfg)
    channel = SnapshotChannel()
    backoff = BackoffPolicy(
        base_s=cfg.recovery.backoff_base_ms / 1000.0,
        cap_s=cfg.recovery.backoff_cap_ms / 1000.0,
        max_restarts=cfg.recovery.max_restarts,
    )
    scheduler = SamplingScheduler(
        readers if readers is not None else build_readers(cfg, replay=replay),
        Aggregator(profile),
        channel,
        period_s=cfg.sampling.period_ms / 1000.0,
        source_deadline_s=cfg.sampling.source_deadline_ms / 1000.0,
        backoff=backoff,
    )
    return Pipeline(profile=profile, channel=channel, scheduler=scheduler)
