"""
JSON progress output for clip2gif.

Emits one JSON object per line so other programs (web UIs, scripts) can
follow engine loading, conversion progress and the artifact history.
"""

import json
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from clip2gif.mirrors import MirrorAttempt
from clip2gif.models import Artifact, EngineState
from clip2gif.pipeline import PipelineState


@dataclass
class JobProgress:
    """Progress of the job currently in flight."""

    segment: int = 0
    total_segments: int = 0
    state: str = PipelineState.IDLE.value
    progress_percent: int = 0
    started_at: Optional[float] = None


@dataclass
class JSONProgressState:
    """Complete state for JSON progress output."""

    version: str = "1.0"
    timestamp: float = field(default_factory=time.time)
    event: str = "progress"
    engine: str = EngineState.UNLOADED.value
    job: JobProgress = field(default_factory=JobProgress)
    history: List[Dict[str, Any]] = field(default_factory=list)
    converted: int = 0
    failed: int = 0


def artifact_summary(artifact: Artifact, path: Optional[str] = None) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "id": artifact.id,
        "size_bytes": artifact.size,
        "created_at": artifact.created_at,
        "settings": artifact.settings.to_dict(),
    }
    if path:
        summary["path"] = path
    return summary


class JSONProgressOutput:
    """Manages JSON progress output to stdout."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self.state = JSONProgressState()

    def _emit(self, event: str, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a JSON progress event."""
        self.state.timestamp = time.time()
        self.state.event = event
        output = asdict(self.state)
        if extra:
            output.update(extra)
        print(json.dumps(output), file=self.stream, flush=True)

    def engine_state(self, state: EngineState) -> None:
        self.state.engine = state.value
        self._emit("engine_state")

    def mirror_attempt(self, attempt: MirrorAttempt) -> None:
        self._emit(
            "mirror_attempt",
            {
                "mirror": {
                    "label": attempt.source.label,
                    "base": attempt.source.base,
                    "index": attempt.index,
                    "total": attempt.total,
                    "cached": attempt.cached,
                    "outcome": attempt.outcome,
                    "error": attempt.error,
                }
            },
        )

    def job_start(self, segment: int, total_segments: int) -> None:
        self.state.job = JobProgress(
            segment=segment,
            total_segments=total_segments,
            state=PipelineState.PREPARING.value,
            started_at=time.time(),
        )
        self._emit("job_start")

    def progress(self, state: PipelineState, percent: int) -> None:
        self.state.job.state = state.value
        self.state.job.progress_percent = percent
        self._emit("progress")

    def artifact(self, artifact: Artifact, history: List[Artifact], path: Optional[str] = None) -> None:
        self.state.converted += 1
        self.state.job.state = PipelineState.SUCCEEDED.value
        self.state.job.progress_percent = 100
        self.state.history = [artifact_summary(a) for a in history]
        self._emit("artifact", {"artifact": artifact_summary(artifact, path)})

    def error(self, kind: str, message: str) -> None:
        self.state.failed += 1
        self.state.job.state = PipelineState.FAILED.value
        self._emit("error", {"error": {"kind": kind, "message": message}})

    def complete(self) -> None:
        """Signal all processing is complete."""
        self._emit("complete")
