"""
Process-level wiring: one engine, one pipeline, one history.

The entry point builds a ClipSession once and passes it around; nothing
looks the engine up globally.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

from clip2gif.engine import EngineService, FFmpegEngine
from clip2gif.history import ArtifactHistory, HandleStore
from clip2gif.mirrors import (
    DEFAULT_ATTEMPT_TIMEOUT,
    CancelToken,
    MirrorLoader,
    ResourceFetcher,
    SourceCache,
)
from clip2gif.models import Artifact, ConversionJob, EngineSource
from clip2gif.pipeline import ConversionPipeline, ProgressCallback

logger = logging.getLogger(__name__)


class ClipSession:
    """Owns the engine service, pipeline and artifact history for one process."""

    def __init__(
        self,
        service: EngineService,
        loader: MirrorLoader,
        pipeline: ConversionPipeline,
        history: ArtifactHistory,
    ):
        self.service = service
        self.loader = loader
        self.pipeline = pipeline
        self.history = history

    @classmethod
    def create(cls, dirs: dict, http_timeout: float = 60.0) -> "ClipSession":
        """Build a session on the application directories from get_app_dirs()."""
        engine_dir: Path = dirs["engine"]
        tmp_dir: Path = dirs["tmp"]
        service = EngineService(FFmpegEngine(work_root=tmp_dir))
        loader = MirrorLoader(service, ResourceFetcher(engine_dir, http_timeout=http_timeout))
        handles = HandleStore(tmp_dir / "handles")
        history = ArtifactHistory(handles)
        pipeline = ConversionPipeline(handles, history=history)
        return cls(service, loader, pipeline, history)

    async def start(
        self,
        sources: Sequence[EngineSource],
        cache: SourceCache,
        timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        await self.loader.load(sources, cache, timeout=timeout, cancel=cancel)

    async def convert(self, job: ConversionJob, on_progress: Optional[ProgressCallback] = None) -> Artifact:
        """Run a job; rejected (not queued) unless the engine is ready and the pipeline idle."""
        engine = self.service.require_ready()
        if not self.pipeline.busy:
            # A new job hides the previous result
            self.history.set_current(None)
        return await self.pipeline.run(engine, job, on_progress)

    def close(self) -> None:
        self.history.clear()
        leftover = self.history.handles.live
        if leftover:
            logger.warning("Revoking %d display handle(s) not tracked by the history", len(leftover))
            for handle in leftover:
                self.history.handles.revoke(handle)
        self.service.close()
        logger.debug("Session closed")
