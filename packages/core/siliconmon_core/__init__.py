"""Core sampling pipeline: aggregation, snapshot handoff, scheduling, settings, and logging."""

from .aggregator import CUMULATIVE_KEYS, Aggregator, counter_rate, normalize_pct
from .channel import SnapshotChannel
from .config import AppConfig, load_config, save_config
from .diagnostics import Footprint, SelfMonitor, build_doctor_payload
from .pipeline import Pipeline, build_pipeline, build_readers, profile_from_config
from .scheduler import BackoffPolicy, SamplingScheduler, SchedulerState, SchedulerStatus

__all__ = [
    "AppConfig",
    "Aggregator",
    "BackoffPolicy",
    "CUMULATIVE_KEYS",
    "Footprint",
    "Pipeline",
    "SamplingScheduler",
    "SchedulerState",
    "SchedulerStatus",
    "SelfMonitor",
    "SnapshotChannel",
    "build_doctor_payload",
    "build_pipeline",
    "build_readers",
    "counter_rate",
    "load_config",
    "normalize_pct",
    "profile_from_config",
    "save_config",
]
