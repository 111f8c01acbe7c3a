"""Typed telemetry models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union


class SourceKind(str, Enum):
    POWER_REPORT = "PowerReport"
    PROCESS_TABLE = "ProcessTable"
    DISK_COUNTERS = "DiskCounters"
    NETWORK_COUNTERS = "NetworkCounters"


class ThermalPressure(str, Enum):
    NOMINAL = "Nominal"
    MODERATE = "Moderate"
    HEAVY = "Heavy"
    TRAPPING = "Trapping"
    SLEEPING = "Sleeping"


MetricValue = Union[float, ThermalPressure]

_EMPTY: Mapping = MappingProxyType({})


def core_key(core_id: int, metric: str) -> str:
    return f"cpu.core[{core_id}].{metric}"


def _frozen(mapping: Mapping | None) -> Mapping:
    if not mapping:
        return _EMPTY
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class RawBlock:
    source: SourceKind
    captured_at: float
    text: str | None = None
    counters: Mapping[str, float] | None = None

    def __post_init__(self) -> None:
        if self.counters is not None:
            object.__setattr__(self, "counters", _frozen(self.counters))


@dataclass(frozen=True)
class MetricSample:
    source: SourceKind
    timestamp: float
    fields: Mapping[str, MetricValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", _frozen(self.fields))


@dataclass(frozen=True)
class SystemSnapshot:
    """Unified, read-only metric state for one sampling cycle."""

    generation: int
    timestamp: float
    captured_at: datetime
    values: Mapping[str, MetricValue] = field(default_factory=dict)
    observed_at: Mapping[str, float] = field(default_factory=dict)
    missed: Mapping[str, int] = field(default_factory=dict)
    degraded: frozenset[SourceKind] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _frozen(self.values))
        object.__setattr__(self, "observed_at", _frozen(self.observed_at))
        object.__setattr__(self, "missed", _frozen(self.missed))
        object.__setattr__(self, "degraded", frozenset(self.degraded))

    @classmethod
    def empty(cls) -> "SystemSnapshot":
        return cls(generation=0, timestamp=0.0, captured_at=datetime.fromtimestamp(0, timezone.utc))

    @property
    def is_empty(self) -> bool:
        return self.generation == 0

    @property
    def staleness(self) -> float:
        """Age of the oldest contributing sample, in seconds."""
        if not self.observed_at:
            return 0.0
        return max(self.timestamp - min(self.observed_at.values()), 0.0)

    def value(self, key: str, default: MetricValue | None = None) -> MetricValue | None:
        return self.values.get(key, default)

    def number(self, key: str) -> float | None:
        val = self.values.get(key)
        if val is None or isinstance(val, Enum):
            return None
        return float(val)

    def is_stale(self, key: str) -> bool:
        return self.missed.get(key, 0) > 0

    def field_staleness(self, key: str) -> float:
        if not self.is_stale(key) or key not in self.observed_at:
            return 0.0
        return max(self.timestamp - self.observed_at[key], 0.0)

    def core_values(self, metric: str, count: int) -> list[float | None]:
        return [self.number(core_key(i, metric)) for i in range(count)]
