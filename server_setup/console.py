"""Nord-themed Rich console shared by the CLI, the logger and the report."""

from enum import Enum

from rich.console import Console
from rich.theme import Theme


class NordColor(Enum):
    # Polar Night
    POLAR_NIGHT_3 = "#4C566A"
    # Snow Storm
    SNOW_STORM_4 = "#D8DEE9"
    # Frost
    FROST_7 = "#8FBCBB"
    FROST_8 = "#88C0D0"
    FROST_9 = "#81A1C1"
    FROST_10 = "#5E81AC"
    # Aurora
    AURORA_11 = "#BF616A"
    AURORA_12 = "#D08770"
    AURORA_13 = "#EBCB8B"
    AURORA_14 = "#A3BE8C"


NORD_THEME = Theme(
    {
        "info": NordColor.FROST_8.value,
        "warning": NordColor.AURORA_13.value,
        "error": f"bold {NordColor.AURORA_11.value}",
        "success": NordColor.AURORA_14.value,
        "header": f"bold {NordColor.FROST_9.value}",
        "muted": NordColor.POLAR_NIGHT_3.value,
        "table.header": f"bold {NordColor.FROST_9.value}",
        "table.cell": NordColor.SNOW_STORM_4.value,
        "panel.border": NordColor.FROST_10.value,
        "rule.line": NordColor.FROST_10.value,
    }
)

STATUS_STYLES = {
    "success": "success",
    "failed": "error",
    "rolled_back": "warning",
    "skipped": "muted",
    "pending": "warning",
    "in_progress": "info",
}

STATUS_ICONS = {
    "success": "✓",
    "failed": "✗",
    "rolled_back": "↺",
    "skipped": "⏭",
    "pending": "?",
    "in_progress": "⋯",
}


def make_console(no_color: bool = False, stderr: bool = True) -> Console:
    """Build the console used for all human-facing output."""
    return Console(theme=NORD_THEME, no_color=no_color, stderr=stderr)
