"""
Rich-based progress UI for clip2gif.

Respects:
- NO_COLOR environment variable
- CLIP2GIF_SCRIPT_MODE environment variable
- sys.stdout.isatty() for automatic detection
"""

import os
import sys
from typing import Optional, Sequence

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from clip2gif.estimate import format_size
from clip2gif.mirrors import MirrorAttempt
from clip2gif.models import Artifact, EngineState
from clip2gif.pipeline import PipelineState
from clip2gif.ui.legacy_ui import STAGE_LABELS, fmt_hms


def _should_use_color() -> bool:
    """Check if color output should be used."""
    # https://no-color.org/
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("CLIP2GIF_SCRIPT_MODE"):
        return False
    try:
        if not sys.stdout.isatty():
            return False
    except (AttributeError, ValueError):
        return False
    return True


class SimpleRichUI:
    """Rich UI for sequential segment processing."""

    def __init__(self, progress_enabled: bool = True, console: Optional[Console] = None):
        use_color = _should_use_color()
        self.console = console or Console(
            force_terminal=use_color if use_color else None,
            no_color=not use_color,
        )
        self.enabled = progress_enabled and (use_color or console is not None)

        self.ok = 0
        self.failed = 0

        self.progress: Optional[Progress] = None
        self.current_task: Optional[TaskID] = None
        self._label = ""

    def log(self, msg: str, style: str = "") -> None:
        """Print a log message."""
        if style:
            self.console.print(msg, style=style)
        else:
            self.console.print(msg)

    def engine_state(self, state: EngineState) -> None:
        if state is EngineState.READY:
            self.console.print("[green]✓[/green] Engine ready")

    def mirror_attempt(self, attempt: MirrorAttempt) -> None:
        where = "cached" if attempt.cached else f"{attempt.index}/{attempt.total}"
        if attempt.outcome == "trying":
            self.console.print(f"[bold blue]▶[/bold blue] Loading engine from [cyan]{attempt.source.label}[/cyan] [dim]({where})[/dim]")
        elif attempt.outcome == "failed":
            self.console.print(f"  [yellow]⊘ {attempt.source.label}[/yellow]: {attempt.error}")

    def job_start(self, segment: int, total: int, label: str) -> None:
        self._label = f"[{segment}/{total}] {label}"
        self.console.print()
        self.console.print(f"[bold blue]▶[/bold blue] [cyan]{self._label}[/cyan]")
        if not self.enabled:
            return
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}[/bold blue]"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("•"),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        self.current_task = self.progress.add_task(STAGE_LABELS[PipelineState.PREPARING], total=100)
        self.progress.start()

    def update_progress(self, state: PipelineState, percent: int) -> None:
        if self.progress is None or self.current_task is None:
            return
        self.progress.update(
            self.current_task,
            description=STAGE_LABELS.get(state, state.value.upper()),
            completed=percent,
        )

    def job_done(self) -> None:
        if self.progress is not None:
            self.progress.stop()
        self.progress = None
        self.current_task = None

    def log_artifact(self, artifact: Artifact, path: Optional[str]) -> None:
        self.ok += 1
        target = f" [dim]→ {path}[/dim]" if path else ""
        self.console.print(f"  [green]✓ OK[/green] {format_size(artifact.size)}{target}")

    def log_error(self, message: str) -> None:
        self.failed += 1
        self.console.print(f"  [red]✗ FAILED[/red]: {message}")

    def show_history(self, entries: Sequence[Artifact]) -> None:
        if not entries:
            return
        table = Table(title="Recent GIFs", show_header=True, header_style="bold")
        table.add_column("ID")
        table.add_column("Size", justify="right")
        table.add_column("Frame")
        table.add_column("FPS", justify="right")
        table.add_column("Quality")
        table.add_column("Filter")
        table.add_column("Duration", justify="right")
        for artifact in entries:
            s = artifact.settings
            table.add_row(
                artifact.id,
                format_size(artifact.size),
                f"{s.width}x{s.height}",
                str(s.fps),
                f"{s.quality.value} ({s.max_colors} colors, {s.dither})",
                s.filter_id,
                f"{s.duration:.1f}s",
            )
        self.console.print(table)

    def print_summary(self, total_time: float) -> None:
        """Print final summary."""
        self.console.print()
        table = Table(title="Summary", box=None, show_header=False)
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("✓ Converted", f"[green]{self.ok}[/green]")
        table.add_row("✗ Failed", f"[red]{self.failed}[/red]")
        table.add_row("⏱ Total time", fmt_hms(total_time))
        self.console.print(table)
