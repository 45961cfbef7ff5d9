"""Per-step results and the end-of-run summary."""

import datetime
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .console import STATUS_ICONS, STATUS_STYLES
from .utils import format_duration


@dataclass
class StepResult:
    name: str
    status: str = "pending"
    message: str = ""
    duration: float = 0.0
    checkpoint: Optional[Path] = None

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "rolled_back")


@dataclass
class SetupReport:
    """Outcome of one provisioning run."""

    mode: str
    started_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    finished_at: Optional[datetime.datetime] = None
    results: List[StepResult] = field(default_factory=list)
    reboot_required: bool = False
    log_file: Optional[Path] = None
    system_info: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[StepResult]:
        return [r for r in self.results if r.status == "success"]

    @property
    def failed(self) -> List[StepResult]:
        return [r for r in self.results if r.failed]

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.datetime.now()
        return (end - self.started_at).total_seconds()

    def result(self, name: str) -> Optional[StepResult]:
        for r in self.results:
            if r.name == name:
                return r
        return None

    def summary_lines(self) -> List[str]:
        lines = [
            f"Mode: {self.mode}",
            f"Started: {self.started_at:%Y-%m-%d %H:%M:%S}",
        ]
        if self.finished_at:
            lines.append(f"Finished: {self.finished_at:%Y-%m-%d %H:%M:%S}")
        lines.append(f"Duration: {format_duration(self.duration)}")
        lines.append(f"Steps succeeded: {len(self.succeeded)}/{len(self.results)}")
        if self.failed:
            lines.append(f"Steps failed: {', '.join(r.name for r in self.failed)}")
        for key, value in self.system_info.items():
            lines.append(f"{key}: {value}")
        if self.log_file:
            lines.append(f"Log file: {self.log_file}")
        if self.reboot_required:
            lines.append("A system reboot is required to complete the setup")
        return lines


def render_report(report: SetupReport, console: Console, logger: Optional[logging.Logger] = None) -> None:
    """Print the step table and summary; mirror both into the log."""
    logger = logger or logging.getLogger("server_setup")

    table = Table(
        title="Setup Status Report",
        show_header=True,
        header_style="table.header",
        border_style="panel.border",
        row_styles=["table.cell"],
    )
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Message")
    for r in report.results:
        icon = STATUS_ICONS.get(r.status, "?")
        style = STATUS_STYLES.get(r.status, "")
        table.add_row(
            r.name,
            f"[{style}]{icon} {r.status.upper()}[/{style}]",
            format_duration(r.duration),
            escape(r.message),
        )
        logger.info(f"{icon} {r.name}: {r.status.upper()} - {r.message}")
    console.print(table)

    lines = report.summary_lines()
    style = "success" if report.success else "error"
    console.print(Panel(escape("\n".join(lines)), title="Summary", border_style=style, expand=False))
    for line in lines:
        logger.info(line)
    if report.reboot_required:
        logger.warning("A system reboot is required to complete the setup")
