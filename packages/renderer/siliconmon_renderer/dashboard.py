"""Terminal dashboard composer built on rich."""

from __future__ import annotations

from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from siliconmon_telemetry.hardware import HardwareProfile
from siliconmon_telemetry.models import SystemSnapshot, core_key

from .history import MetricHistory, sparkline
from .themes import ThemeConfig, get_theme

_GB = 1024.0 ** 3


def human_rate(bytes_per_s: float | None) -> str:
    if bytes_per_s is None:
        return "--"
    value = float(bytes_per_s)
    for unit in ("B/s", "KB/s", "MB/s", "GB/s"):
        if abs(value) < 1024.0 or unit == "GB/s":
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} GB/s"


class DashboardRenderer:
    """Builds one frame from the latest snapshot; never touches the sources."""

    def __init__(self, profile: HardwareProfile, theme_name: str | None = None, spark_width: int = 36) -> None:
        self.profile = profile
        self.theme: ThemeConfig = get_theme(theme_name)
        self.spark_width = spark_width

    def _metric(self, snap: SystemSnapshot, key: str, fmt: str, scale: float = 1.0) -> Text:
        value = snap.number(key)
        if value is None:
            return Text("--", style=self.theme.stale)
        text = Text(fmt.format(value * scale), style=self.theme.text)
        if snap.is_stale(key):
            text.stylize(self.theme.stale)
            text.append(f" ({snap.field_staleness(key):.0f}s old)", style=self.theme.stale)
        return text

    def _first(self, snap: SystemSnapshot, *keys: str) -> str:
        for key in keys:
            if snap.number(key) is not None:
                return key
        return keys[0]

    def _usage_panel(
        self,
        snap: SystemSnapshot,
        history: MetricHistory,
        title: str,
        util_key: str,
        detail: Text,
        color: str,
        cores: range | None = None,
    ) -> Panel:
        head = Text.assemble(self._metric(snap, util_key, "{:.0f}%"), " @ ", detail)
        avg = Text(f"Avg: {history.average(util_key):.1f}%", style=self.theme.stale)
        chart = Text(sparkline(history.values(util_key), self.spark_width), style=color)
        rows: list[RenderableType] = [head, avg, chart]
        if cores:
            per_core = Text()
            for core_id in cores:
                value = snap.number(core_key(core_id, "util_pct"))
                glyph = "·" if value is None else sparkline([value], 1)
                per_core.append(f"{core_id}", style=self.theme.stale)
                per_core.append(glyph + " ", style=color)
            rows.append(per_core)
        return Panel(Group(*rows), title=title, border_style=color)

    def _memory_panel(self, snap: SystemSnapshot, history: MetricHistory) -> Panel:
        color = self.theme.memory
        lines = [
            self._metric(snap, "mem.used_pct", "{:.1f}%"),
            Text.assemble(
                self._metric(snap, "mem.used_bytes", "{:.2f} GB", 1 / _GB),
                " / ",
                self._metric(snap, "mem.total_bytes", "{:.2f} GB", 1 / _GB),
            ),
            Text.assemble(
                "Swap: ",
                self._metric(snap, "swap.used_bytes", "{:.2f} GB", 1 / _GB),
                " / ",
                self._metric(snap, "swap.total_bytes", "{:.2f} GB", 1 / _GB),
            ),
            Text(f"Avg: {history.average('mem.used_pct'):.1f}%", style=self.theme.stale),
            Text(sparkline(history.values("mem.used_pct"), self.spark_width * 2), style=color),
        ]
        return Panel(Group(*lines), title="Memory Usage", border_style=color)

    def _chip_panel(self) -> Panel:
        p = self.profile
        body = Text(
            f"Model: {p.name}\nE-Cores: {p.e_core_count}\nP-Cores: {p.p_core_count}\nGPU Cores: {p.gpu_core_count}"
        )
        return Panel(body, title="Chip Info", border_style=self.theme.border)

    def _io_panel(self, snap: SystemSnapshot) -> Panel:
        def rate(*keys: str) -> Text:
            key = self._first(snap, *keys)
            value = snap.number(key)
            text = Text(human_rate(value), style=self.theme.text if value is not None else self.theme.stale)
            if value is not None and snap.is_stale(key):
                text.stylize(self.theme.stale)
            return text

        table = Table.grid(padding=(0, 1))
        table.add_column(style=self.theme.stale)
        table.add_column()
        table.add_row("Net in", rate("net.bytes_recv_per_s", "net.in_bytes_per_s"))
        table.add_row("Net out", rate("net.bytes_sent_per_s", "net.out_bytes_per_s"))
        table.add_row("Disk read", rate("disk.bytes_read_per_s", "disk.read_bytes_per_s"))
        table.add_row("Disk write", rate("disk.bytes_written_per_s", "disk.write_bytes_per_s"))
        table.add_row("Processes", self._metric(snap, "proc.count", "{:.0f}"))
        return Panel(table, title="Network & Disk", border_style=self.theme.border)

    def _power_panel(self, snap: SystemSnapshot) -> Panel:
        table = Table.grid(padding=(0, 1))
        table.add_column(style=self.theme.stale)
        table.add_column()
        table.add_row("CPU", self._metric(snap, "cpu.power_mw", "{:.2f} W", 1 / 1000))
        table.add_row("GPU", self._metric(snap, "gpu.power_mw", "{:.2f} W", 1 / 1000))
        table.add_row("ANE", self._metric(snap, "ane.power_mw", "{:.2f} W", 1 / 1000))
        table.add_row("Total", self._metric(snap, "package.power_mw", "{:.2f} W", 1 / 1000))
        pressure = snap.value("thermal.pressure")
        table.add_row("Thermal", Text(getattr(pressure, "value", "--"), style=self.theme.text))
        return Panel(table, title="Power", border_style=self.theme.border)

    def _header(self, snap: SystemSnapshot, footer: str | None) -> Text:
        if snap.is_empty:
            return Text("siliconmon  waiting for first sample...", style=self.theme.stale)
        text = Text(f"siliconmon  {self.profile.name}  gen {snap.generation}", style=self.theme.text)
        text.append(f"  oldest sample {snap.staleness:.1f}s", style=self.theme.stale)
        if snap.degraded:
            names = ", ".join(sorted(s.value for s in snap.degraded))
            text.append(f"  DEGRADED: {names}", style=self.theme.alert)
        if footer:
            text.append(f"  {footer}", style=self.theme.stale)
        return text

    def render(self, snap: SystemSnapshot, history: MetricHistory, footer: str | None = None) -> RenderableType:
        t = self.theme
        e_detail = self._metric(snap, "cpu.e_cluster.freq_mhz", "{:.0f} MHz")
        p_detail = self._metric(snap, "cpu.p_cluster.freq_mhz", "{:.0f} MHz")
        gpu_detail = self._metric(snap, "gpu.freq_mhz", "{:.0f} MHz")
        ane_detail = self._metric(snap, "ane.power_mw", "{:.2f} W", 1 / 1000)

        top = Table.grid(expand=True)
        top.add_column(ratio=1)
        top.add_column(ratio=1)
        top.add_row(
            self._usage_panel(snap, history, "E-CPU Usage", "cpu.e_cluster.util_pct", e_detail, t.e_cpu,
                              self.profile.core_ids("E")),
            self._usage_panel(snap, history, "GPU Usage", "gpu.util_pct", gpu_detail, t.gpu),
        )
        top.add_row(
            self._usage_panel(snap, history, "P-CPU Usage", "cpu.p_cluster.util_pct", p_detail, t.p_cpu,
                              self.profile.core_ids("P")),
            self._usage_panel(snap, history, "ANE Usage", "ane.util_pct", ane_detail, t.ane),
        )

        bottom = Table.grid(expand=True)
        bottom.add_column(ratio=1)
        bottom.add_column(ratio=1)
        bottom.add_column(ratio=1)
        bottom.add_row(self._chip_panel(), self._io_panel(snap), self._power_panel(snap))

        return Group(self._header(snap, footer), top, self._memory_panel(snap, history), bottom)
