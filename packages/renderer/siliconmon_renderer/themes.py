"""Built-in terminal dashboard themes."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_THEME_NAME = "classic"


@dataclass(frozen=True)
class ThemeConfig:
    name: str
    e_cpu: str
    p_cpu: str
    gpu: str
    ane: str
    memory: str
    border: str
    text: str
    stale: str
    alert: str


THEMES: dict[str, ThemeConfig] = {
    "classic": ThemeConfig(
        name="classic",
        e_cpu="green",
        p_cpu="yellow",
        gpu="magenta",
        ane="blue",
        memory="cyan",
        border="white",
        text="bold white",
        stale="dim",
        alert="bold red",
    ),
    "solar": ThemeConfig(
        name="solar",
        e_cpu="orange1",
        p_cpu="gold1",
        gpu="red3",
        ane="dark_orange3",
        memory="yellow3",
        border="orange3",
        text="bold bright_white",
        stale="grey50",
        alert="bold bright_red",
    ),
    "mono": ThemeConfig(
        name="mono",
        e_cpu="white",
        p_cpu="white",
        gpu="white",
        ane="white",
        memory="white",
        border="grey70",
        text="bold white",
        stale="grey42",
        alert="reverse bold",
    ),
}


def list_themes() -> list[str]:
    return sorted(THEMES.keys())


def get_theme(name: str | None) -> ThemeConfig:
    if not name:
        return THEMES[DEFAULT_THEME_NAME]
    return THEMES.get(name, THEMES[DEFAULT_THEME_NAME])
