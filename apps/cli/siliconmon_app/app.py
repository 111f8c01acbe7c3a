"""Live dashboard runtime: sampling thread plus an independent redraw loop."""

from __future__ import annotations

import time
from pathlib import Path

from rich.console import Console
from rich.live import Live

from siliconmon_core import AppConfig, SelfMonitor, build_pipeline
from siliconmon_core.diagnostics import is_privileged
from siliconmon_core.logging_setup import get_logger, install_crash_hooks
from siliconmon_renderer import DashboardRenderer, MetricHistory

from .keys import QuitKeys


class RedrawThrottle:
    """Redraw on a new snapshot generation, or at least once per grace period."""

    def __init__(self, grace_s: float = 0.5, clock=time.monotonic) -> None:
        self.grace_s = grace_s
        self._clock = clock
        self._last_draw = clock() - grace_s
        self._last_generation = -1

    def should_redraw(self, generation: int) -> bool:
        now = self._clock()
        if generation != self._last_generation or now - self._last_draw >= self.grace_s:
            self._last_generation = generation
            self._last_draw = now
            return True
        return False


def run_dashboard(cfg: AppConfig, replay: Path | None = None, console: Console | None = None) -> int:
    install_crash_hooks()
    logger = get_logger()
    if cfg.power_report.enabled and replay is None and not is_privileged():
        logger.warning(
            "not running as root; power report source will be degraded",
            extra={"event": "unprivileged"},
        )

    pipeline = build_pipeline(cfg, replay=replay)
    history = MetricHistory(window_s=cfg.ui.history_seconds)
    renderer = DashboardRenderer(pipeline.profile, cfg.ui.theme)
    self_monitor = SelfMonitor()
    throttle = RedrawThrottle(grace_s=0.5)
    refresh_s = cfg.ui.refresh_ms / 1000.0
    console = console or Console()

    with pipeline.scheduler, QuitKeys() as keys:
        first = pipeline.channel.latest()
        with Live(renderer.render(first, history), console=console, screen=True, auto_refresh=False) as live:
            try:
                while True:
                    snap = pipeline.channel.latest()
                    history.record(snap)
                    if throttle.should_redraw(snap.generation):
                        fp = self_monitor.sample()
                        footer = f"self {fp.cpu_percent:.1f}% cpu, {fp.rss_mb:.0f} MB  q quit"
                        live.update(renderer.render(snap, history, footer=footer), refresh=True)
                    if keys.pressed(refresh_s):
                        logger.info("dashboard quit by key", extra={"event": "dashboard_exit"})
                        break
            except KeyboardInterrupt:
                logger.info("dashboard interrupted", extra={"event": "dashboard_exit"})
    return 0
