"""
Plain-text progress UI for clip2gif.

Used for non-interactive terminals or when --no-progress is given.
"""

import shutil
import sys
from typing import Optional, Sequence

from clip2gif.estimate import format_size
from clip2gif.mirrors import MirrorAttempt
from clip2gif.models import Artifact, EngineState
from clip2gif.pipeline import PipelineState


def term_width() -> int:
    """Get terminal width."""
    try:
        return shutil.get_terminal_size((120, 20)).columns
    except (OSError, ValueError):
        return 120


def mkbar(pct: int, width: int = 26) -> str:
    """Create a simple progress bar string."""
    pct = max(0, min(100, pct))
    filled = int(pct * width / 100)
    empty = width - filled
    return "#" * filled + "-" * empty


def shorten(s: str, maxlen: int) -> str:
    """Shorten a string with ellipsis if too long."""
    if maxlen <= 0:
        return ""
    if len(s) <= maxlen:
        return s
    if maxlen <= 3:
        return s[:maxlen]
    return s[: maxlen - 3] + "..."


def fmt_hms(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    if seconds < 0:
        seconds = 0
    s = int(round(seconds))
    h = s // 3600
    m = (s % 3600) // 60
    r = s % 60
    return f"{h:02d}:{m:02d}:{r:02d}"


STAGE_LABELS = {
    PipelineState.PREPARING: "PREPARE",
    PipelineState.GENERATING_PALETTE: "PALETTE",
    PipelineState.ENCODING: "ENCODE",
    PipelineState.FINALIZING: "FINALIZE",
}


class LegacyProgressUI:
    """Single-line text progress, rewritten in place on a TTY."""

    def __init__(self, progress: bool = True, bar_width: int = 26, stream=None):
        self.stream = stream or sys.stdout
        try:
            is_tty = self.stream.isatty()
        except (AttributeError, ValueError):
            is_tty = False
        self.enabled = progress and is_tty
        self.bar_width = bar_width
        self._last_render: Optional[str] = None
        self._label = ""

        self.ok = 0
        self.failed = 0

    def render(self, stage: str, pct: int) -> None:
        """Render progress line to terminal."""
        if not self.enabled:
            return
        left = f"[{mkbar(pct, self.bar_width)}] {pct:3d}% | {stage:<8} | "
        name = shorten(self._label, max(10, term_width() - len(left) - 1))
        line = f"{left}{name}"
        pad = ""
        if self._last_render is not None and len(self._last_render) > len(line):
            pad = " " * (len(self._last_render) - len(line))
        if line != self._last_render:
            self.stream.write("\r" + line + pad)
            self.stream.flush()
            self._last_render = line

    def endline(self) -> None:
        """Clear the current progress line."""
        if not self.enabled or self._last_render is None:
            return
        self.stream.write("\r" + " " * len(self._last_render) + "\r")
        self.stream.flush()
        self._last_render = None

    def log(self, msg: str) -> None:
        """Print a log message, clearing progress line first."""
        self.endline()
        print(msg, file=self.stream, flush=True)

    def engine_state(self, state: EngineState) -> None:
        if state is EngineState.READY:
            self.log("Engine ready")
        elif state is EngineState.FAILED:
            self.log("Engine source failed")

    def mirror_attempt(self, attempt: MirrorAttempt) -> None:
        where = "cached" if attempt.cached else f"{attempt.index}/{attempt.total}"
        if attempt.outcome == "trying":
            self.log(f"Loading engine from {attempt.source.label} ({where})...")
        elif attempt.outcome == "failed":
            self.log(f"  {attempt.source.label} failed: {attempt.error}")

    def job_start(self, segment: int, total: int, label: str) -> None:
        self._label = f"[{segment}/{total}] {label}"
        self.log(f"> {self._label}")

    def update_progress(self, state: PipelineState, percent: int) -> None:
        self.render(STAGE_LABELS.get(state, state.value.upper()), percent)

    def job_done(self) -> None:
        self.endline()

    def log_artifact(self, artifact: Artifact, path: Optional[str]) -> None:
        self.ok += 1
        target = f" -> {path}" if path else ""
        self.log(f"  OK {format_size(artifact.size)}{target}")

    def log_error(self, message: str) -> None:
        self.failed += 1
        self.log(f"  FAILED: {message}")

    def show_history(self, entries: Sequence[Artifact]) -> None:
        if not entries:
            return
        self.log("Recent GIFs (newest first):")
        for artifact in entries:
            s = artifact.settings
            self.log(
                f"  {artifact.id:<18} {s.width}x{s.height} {s.fps}fps {s.quality.value:<8} "
                f"{s.duration:.1f}s {format_size(artifact.size)}"
            )

    def print_summary(self, total_time: float) -> None:
        self.log("")
        self.log("=== Summary ===")
        self.log(f"Converted: {self.ok}")
        self.log(f"Failed: {self.failed}")
        self.log(f"Total time: {fmt_hms(total_time)}")
