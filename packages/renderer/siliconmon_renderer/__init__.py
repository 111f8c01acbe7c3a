"""Terminal renderer for siliconmon snapshots."""

from .dashboard import DashboardRenderer, human_rate
from .history import MetricHistory, sparkline
from .themes import DEFAULT_THEME_NAME, ThemeConfig, get_theme, list_themes

__all__ = [
    "DEFAULT_THEME_NAME",
    "DashboardRenderer",
    "MetricHistory",
    "ThemeConfig",
    "get_theme",
    "human_rate",
    "list_themes",
    "sparkline",
]
