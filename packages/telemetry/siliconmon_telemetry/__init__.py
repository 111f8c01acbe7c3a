"""Telemetry sources, parsing, and the shared metric model for siliconmon."""

from .errors import MalformedBlock, ParseTimeout, ProcessExited, SourceUnavailable, TelemetryError
from .hardware import HardwareProfile, detect_hardware
from .models import MetricSample, MetricValue, RawBlock, SourceKind, SystemSnapshot, ThermalPressure, core_key
from .parser import KNOWN_COUNTER_KEYS, MetricParser, parse_report_text
from .sources import (
    DiskCounterSource,
    NetworkCounterSource,
    PowerReportProcess,
    ProcessTableSource,
    RawSourceReader,
    ReportReplaySource,
    powermetrics_command,
    split_reports,
    timed_reports,
)

__all__ = [
    "DiskCounterSource",
    "HardwareProfile",
    "KNOWN_COUNTER_KEYS",
    "MalformedBlock",
    "MetricParser",
    "MetricSample",
    "MetricValue",
    "NetworkCounterSource",
    "ParseTimeout",
    "PowerReportProcess",
    "ProcessExited",
    "ProcessTableSource",
    "RawBlock",
    "RawSourceReader",
    "ReportReplaySource",
    "SourceKind",
    "SourceUnavailable",
    "SystemSnapshot",
    "TelemetryError",
    "ThermalPressure",
    "core_key",
    "detect_hardware",
    "parse_report_text",
    "powermetrics_command",
    "split_reports",
    "timed_reports",
]
